"""
PixelQueue - Async Image Job Worker

Idempotent admission, priority queue with retries and dead-lettering,
and the seven-stage product photo pipeline the queue drives.
"""

__version__ = "1.0.0"
