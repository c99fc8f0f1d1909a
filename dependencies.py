from fastapi import Request

from broker import SessionBroker


def get_broker(request: Request) -> SessionBroker:
    """The broker owned by the running app, handed to each request."""
    return request.app.state.broker
