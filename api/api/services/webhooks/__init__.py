"""Provider-specific inbound webhook handlers."""
