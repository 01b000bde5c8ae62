"""edgehost local - run edge function scripts on your machine."""
__version__ = "1.0.0"


def run_server(*args, **kwargs):
    """Run the local server (imported lazily so the sandbox process stays light)."""
    from .app import run_server as _run_server
    return _run_server(*args, **kwargs)
