"""Shared fixtures for the room server and network proxy tests."""
import pytest

from config import Config
from registry import SessionRegistry
from server import create_app


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def server(registry):
    config = Config()
    config.SECRET_KEY = 'test'
    app, socketio = create_app(config, registry)
    app.config['TESTING'] = True
    return app, socketio


@pytest.fixture
def connect(server):
    """Open Socket.IO test clients against the app; disconnects leftovers on teardown."""
    app, socketio = server
    clients = []

    def _connect():
        client = socketio.test_client(app)
        clients.append(client)
        return client

    yield _connect

    for client in clients:
        if client.is_connected():
            client.disconnect()


def received(client, name):
    """Payloads of every `name` event the client got since the last call."""
    return [msg['args'][0] if msg['args'] else None
            for msg in client.get_received() if msg['name'] == name]
