"""Cost-first LLM routing with live telemetry, tenant policy and audit trails."""

__version__ = "0.1.0"
