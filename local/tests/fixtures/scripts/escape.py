"""Tries to read a file outside the interpreter's library roots."""
from edgehost_local.runtime import Response


def fetch(request, env, ctx):
    with open("/etc/passwd") as f:
        return Response(f.read())
