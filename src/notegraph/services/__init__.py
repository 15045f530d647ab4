"""Services layered on top of the notegraph index store."""
