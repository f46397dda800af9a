"""Generation Queue - admission, scheduling and recovery for generation jobs.

Tenants submit image, video and audio generation jobs; the engine charges tokens,
orders work by tier priority, bounds concurrency, rotates API keys and recovers
stuck executions.
"""

__version__ = "0.1.0"
