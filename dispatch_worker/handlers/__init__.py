"""Job handler plugins, one module per queue."""
