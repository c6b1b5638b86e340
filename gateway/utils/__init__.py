def client_ip(scope_or_request) -> str:
    """Resolve the peer address of an ASGI scope or Starlette connection."""
    client = getattr(scope_or_request, "client", None)
    if client is None and isinstance(scope_or_request, dict):
        client = scope_or_request.get("client")
    if not client:
        return "unknown"
    host = getattr(client, "host", None)
    if host is None:
        host = client[0]
    return host or "unknown"
