import sys
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from matchfeed.api import feed as feed_api
from matchfeed.infra import postgres
from matchfeed.infra.redis import redis_client, set_redis_client
from matchfeed.main import create_app
from matchfeed.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Keep background jobs off and pin the environment for every test."""
	original_env = settings.environment
	original_jobs = settings.jobs_enabled
	original_worker = settings.presort_worker_enabled
	settings.environment = "test"
	settings.jobs_enabled = False
	settings.presort_worker_enabled = False
	try:
		yield
	finally:
		settings.environment = original_env
		settings.jobs_enabled = original_jobs
		settings.presort_worker_enabled = original_worker


@pytest.fixture
def app():
	application = create_app()
	try:
		yield application
	finally:
		application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def api_client(app):
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


@pytest.fixture
def override_feed_service(app):
	def _install(service):
		app.dependency_overrides[feed_api.get_feed_service] = lambda: service
		return service

	return _install


@pytest.fixture
def override_compatibility_service(app):
	def _install(service):
		app.dependency_overrides[feed_api.get_compatibility_service] = lambda: service
		return service

	return _install
