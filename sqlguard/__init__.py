"""SQL Guard: safety-gated SQL execution with retrying connections and performance monitoring."""

__version__ = "0.1.0"
