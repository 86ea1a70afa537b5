"""HTTP gateway core for multipart/form-data requests, with routes, middlewares and health checks supplied by modules."""

__version__ = "0.1.0"