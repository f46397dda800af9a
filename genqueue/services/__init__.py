"""Admission, scheduling and recovery services for the generation queue."""
