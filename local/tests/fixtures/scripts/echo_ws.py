"""Accepts WebSocket upgrades and echoes every message back."""
from edgehost_local.runtime import Response, WebSocketPair


def fetch(request, env, ctx):
    if request.headers.get("upgrade", "").lower() != "websocket":
        return Response("expected a websocket", status=426)

    client, server = WebSocketPair()
    server.accept()

    def on_message(event):
        if event.data == "bye":
            server.close(1000, "bye")
        else:
            server.send(f"echo: {event.data}")

    server.add_event_listener("message", on_message)
    return Response(status=101, web_socket=client)
