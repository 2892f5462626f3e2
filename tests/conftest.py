import json

import pytest
from fastapi.testclient import TestClient


class RecordingSender:
    """Stands in for a websocket's send_text and keeps every decoded envelope."""

    def __init__(self):
        self.events = []

    async def __call__(self, text):
        self.events.append(json.loads(text))

    def tags(self):
        return [event["event"] for event in self.events]

    def of(self, tag):
        return [event["payload"] for event in self.events if event["event"] == tag]

    def clear(self):
        self.events.clear()


@pytest.fixture
def recorder():
    return RecordingSender


@pytest.fixture
def client():
    from app import app

    with TestClient(app) as test_client:
        yield test_client
