"""orchestral: durable refine/build/verify/gate pipeline orchestrator."""

__version__ = "0.1.0"
