"""
Presale Kernel

The payment lifecycle of a token-presale site:
- Invoice state machine with compare-and-swap transitions
- Durable notification queue with leased claims and exponential backoff
- Delivery worker pool
- Tamper-evident, append-only audit log
"""

__version__ = "0.1.0"
