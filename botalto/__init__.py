"""botalto - multi-tenant chat bot host with sandboxed command handlers."""

__version__ = "1.0.0"
