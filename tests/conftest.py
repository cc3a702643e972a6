import asyncio
import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("PORTAINER_URL", "https://portainer.example.test")
os.environ.setdefault("PORTAINER_API_KEY", "test_api_key")
os.environ.setdefault("PORTAINER_ENDPOINT_ID", "1")
os.environ.setdefault("STACKPULSE_DB_URL", "sqlite:///./test_stackpulse.db")
os.environ.setdefault("REDEPLOY_DISABLED_STACKS", "stackpulse")

from sqlalchemy import delete  # noqa: E402

from stackpulse.audit import RedeployAuditLog  # noqa: E402
from stackpulse.broadcast import StatusBroadcaster  # noqa: E402
from stackpulse.db import SessionLocal, init_db  # noqa: E402
from stackpulse.dispatcher import RedeployDispatcher  # noqa: E402
from stackpulse.maintenance import MaintenanceLock  # noqa: E402
from stackpulse.models import RedeployLog, Setting  # noqa: E402
from stackpulse.phases import PhaseStore  # noqa: E402
from stackpulse.portainer_api import PortainerApiError  # noqa: E402
from stackpulse.snapshot_cache import SnapshotCache  # noqa: E402


def portainer_stack(stack_id, name, *, endpoint_id=1, git=False, env=None):
    payload = {
        "Id": stack_id,
        "Name": name,
        "EndpointId": endpoint_id,
        "Env": env or [],
    }
    if git:
        payload["GitConfig"] = {"URL": f"https://git.example.test/{name}.git", "ReferenceName": "refs/heads/main"}
    return payload


class FakePortainer:
    """In-memory stand-in for PortainerApiClient that records every call."""

    def __init__(self, stacks, *, image_status=None, stack_files=None):
        self.stacks = [dict(stack) for stack in stacks]
        self.image_status = dict(image_status or {})
        self.stack_files = dict(stack_files or {})
        self.calls = []
        self.list_calls = 0
        self.list_error = None
        self.probe_errors = set()
        self.pull_errors = set()
        self.redeploy_errors = {}
        self.redeploy_gate = None

    async def list_stacks(self):
        self.list_calls += 1
        await asyncio.sleep(0)
        if self.list_error is not None:
            raise self.list_error
        return [dict(stack) for stack in self.stacks]

    async def get_stack(self, *, stack_id):
        self.calls.append(("get_stack", stack_id))
        for stack in self.stacks:
            if str(stack["Id"]) == str(stack_id):
                return dict(stack)
        raise PortainerApiError(message=f"Portainer API call failed (404): stack {stack_id} not found")

    async def get_stack_file(self, *, stack_id):
        self.calls.append(("get_stack_file", stack_id))
        return self.stack_files.get(str(stack_id), "services: {}\n")

    async def get_image_status(self, *, stack_id):
        if str(stack_id) in self.probe_errors:
            raise PortainerApiError(message="Portainer API call failed (500): probe failed")
        return self.image_status.get(str(stack_id), "outdated")

    async def pull_image(self, *, endpoint_id, image):
        self.calls.append(("pull_image", image))
        if image in self.pull_errors:
            raise PortainerApiError(message="Portainer API call failed (500): pull access denied")

    async def redeploy_git_stack(self, *, stack_id, endpoint_id, env, reference_name):
        self.calls.append(("redeploy_git_stack", stack_id))
        await self._finish_redeploy(stack_id)

    async def update_stack(self, *, stack_id, endpoint_id, stack_file_content, env):
        self.calls.append(("update_stack", stack_id))
        await self._finish_redeploy(stack_id)

    async def _finish_redeploy(self, stack_id):
        if self.redeploy_gate is not None:
            await self.redeploy_gate.wait()
        else:
            await asyncio.sleep(0)
        error = self.redeploy_errors.get(str(stack_id))
        if error is not None:
            raise error
        self.image_status[str(stack_id)] = "updated"

    def count(self, method, stack_id=None):
        return sum(
            1 for name, arg in self.calls if name == method and (stack_id is None or str(arg) == str(stack_id))
        )


@pytest.fixture()
def db_session():
    init_db()
    session = SessionLocal()
    session.execute(delete(RedeployLog))
    session.execute(delete(Setting))
    session.commit()
    try:
        yield session
    finally:
        session.execute(delete(RedeployLog))
        session.execute(delete(Setting))
        session.commit()
        session.close()


@pytest.fixture()
def build_services(db_session):
    def _build(portainer, *, ttl_seconds=30.0, disabled_names=frozenset({"stackpulse"}), clock=None):
        phases = PhaseStore()
        broadcaster = StatusBroadcaster(max_queue_size=64)
        audit = RedeployAuditLog(SessionLocal)
        maintenance = MaintenanceLock(SessionLocal)
        cache_kwargs = {}
        if clock is not None:
            cache_kwargs["clock"] = clock
        cache = SnapshotCache(
            client=portainer,
            maintenance=maintenance,
            phases=phases,
            endpoint_id=1,
            ttl_seconds=ttl_seconds,
            probe_concurrency=4,
            disabled_names=disabled_names,
            **cache_kwargs,
        )
        dispatcher = RedeployDispatcher(
            client=portainer,
            phases=phases,
            broadcaster=broadcaster,
            audit=audit,
            snapshot_cache=cache,
            maintenance=maintenance,
            endpoint_id=1,
            disabled_names=disabled_names,
        )
        return SimpleNamespace(
            portainer=portainer,
            phases=phases,
            broadcaster=broadcaster,
            audit=audit,
            maintenance=maintenance,
            cache=cache,
            dispatcher=dispatcher,
        )

    return _build


@pytest.fixture()
def fake_portainer_factory():
    return FakePortainer


@pytest.fixture()
def stack_payload():
    return portainer_stack
