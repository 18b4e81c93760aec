"""
otel-job-sidecar - OpenTelemetry sidecar for CI jobs.
"""
__version__ = "0.1.0"
