"""
Schema-guided extraction pipeline.

Fetches a target page, strips it down to text, asks a completion service to
map it onto a user-defined schema and records every step as a job with
telemetry. See lifecycle.JobLifecycleManager for the entry point.
"""

__version__ = "1.0.0"
