"""netdispatch: remote command dispatch and monitoring for ISP network devices."""

__version__ = "0.1.0"
