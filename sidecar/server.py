import os
import socket

import uvicorn

LOOPBACK_HOST = "127.0.0.1"


def bind_host() -> str:
    """Loopback unless BIND_ALL_INTERFACES=true (shared workstation setups)."""
    if os.getenv("BIND_ALL_INTERFACES", "").lower() == "true":
        return "0.0.0.0"
    return LOOPBACK_HOST


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LOOPBACK_HOST, 0))
        return sock.getsockname()[1]


def start_server(app, port: int):
    # The desktop shell reads the chosen port from the first stdout line
    print(f"PORT:{port}", flush=True)
    uvicorn.run(app, host=bind_host(), port=port, log_level="warning")
