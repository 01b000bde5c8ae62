"""Turns every WebSocket request away with a plain response."""
from edgehost_local.runtime import Response


def fetch(request, env, ctx):
    return Response("no sockets here", status=403, headers={"x-reason": "closed"})
