import os

# The tracer provider is configured when dealflow.main is first imported.
os.environ.setdefault("OTEL_ENABLED", "true")
