"""Shared fixtures: in-process Redis (fakeredis) and a seeded tenant directory."""

import json

import fakeredis
import httpx
import pytest
from fakeredis import aioredis as fake_aioredis

from ticketflow.broker import WorkQueue
from ticketflow.models import Agent, Office
from ticketflow.services.storage import Storage

TENANT = 1

OFFICE_A = Office(name="A", address="Алматы, пр. Абая 1", latitude=43.222, longitude=76.8512)
OFFICE_B = Office(name="B", address="Астана, ул. Кунаева 2", latitude=51.1801, longitude=71.446)


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def connect(redis_server):
    def _connect():
        return fake_aioredis.FakeRedis(server=redis_server, decode_responses=True)

    return _connect


@pytest.fixture
def redis_client(connect):
    return connect()


@pytest.fixture
def storage(redis_client):
    return Storage(redis_client)


@pytest.fixture
def queue(connect):
    return WorkQueue(connect, key="queue:test")


async def seed_tenant(storage: Storage, agents: list[Agent], offices=(OFFICE_A, OFFICE_B)) -> None:
    for office in offices:
        await storage.add_office(TENANT, office)
    for agent in agents:
        await storage.register_agent(agent)


def completion_body(**overrides) -> dict:
    """A chat-completions response whose content is a valid classification."""
    content = {
        "category": "Жалоба",
        "sentiment": "Негативный",
        "priority": 7,
        "language": "RU",
        "summary": "Клиент жалуется на задержку вывода средств.",
        "recommendation": "Проверить статус заявки на вывод.",
    }
    content.update(overrides)
    return {"choices": [{"message": {"role": "assistant", "content": json.dumps(content, ensure_ascii=False)}}]}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
