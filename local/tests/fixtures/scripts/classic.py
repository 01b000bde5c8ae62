"""Classic script: bindings are globals, responses go through respond_with."""
from edgehost_local.runtime import Response


async def handle(request):
    return Response(f"classic {GREETING} {request.method}")


def on_fetch(event):
    event.respond_with(handle(event.request))


add_event_listener("fetch", on_fetch)
