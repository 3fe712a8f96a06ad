"""Shared pytest fixtures."""
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from fieldsync.db import Database
from fieldsync.schemas.checklists import ChecklistTemplate
from fieldsync.repositories.checklist_templates import ChecklistTemplateRepository
from fieldsync.sync.adapters.registry import default_adapters
from fieldsync.sync.api_client import SyncApiClient
from fieldsync.sync.engine import SyncEngine
from fieldsync.sync.network import StaticNetworkProbe
from fieldsync.sync.outbox import MutationOutbox


BASE_URL = "https://api.test"
TECHNICIAN_ID = "tech-1"


class FakeBackend:
    """
    In-process stand-in for the sync API, served through httpx.MockTransport.

    pages[endpoint] is a list of pull pages returned in order (the last one repeats).
    push_handler(endpoint, mutations) returns the per-mutation results; by default every
    mutation is applied.
    """

    def __init__(self):
        self.pages: Dict[str, List[Dict[str, Any]]] = {}
        self.requests: List[httpx.Request] = []
        self.push_handler: Optional[Callable[[str, List[Dict[str, Any]]], Any]] = None
        self.post_handler: Optional[Callable[[str, Dict[str, Any]], httpx.Response]] = None
        self.fail_with: Optional[int] = None
        self.raise_network_error = False

    def pulls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "GET" and r.url.path == path]

    def posts(self, path: Optional[str] = None) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "POST" and (path is None or r.url.path == path)]

    def pushed_mutations(self, path: str) -> List[Dict[str, Any]]:
        out = []
        for request in self.posts(path):
            out.extend(json.loads(request.content)["mutations"])
        return out

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_network_error:
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"message": "boom"})

        path = request.url.path
        if request.method == "GET":
            queue = self.pages.get(path) or [{"items": [], "hasMore": False, "nextCursor": None}]
            page = queue.pop(0) if len(queue) > 1 else queue[0]
            return httpx.Response(200, json=page)

        body = json.loads(request.content or b"{}")
        if "mutations" in body:
            if self.push_handler is not None:
                results = self.push_handler(path, body["mutations"])
            else:
                results = [{"mutationId": m["mutationId"], "status": "applied"} for m in body["mutations"]]
            return httpx.Response(200, json={"results": results})
        if self.post_handler is not None:
            return self.post_handler(path, body)
        return httpx.Response(200, json={"storagePath": f"uploads{path}"})


@pytest.fixture
def db():
    database = Database("sqlite://", reset_on_corruption=False).init()
    yield database
    database.close()


@pytest.fixture
def outbox(db):
    return MutationOutbox(db, max_attempts=5)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def network():
    return StaticNetworkProbe(online=True)


@pytest.fixture
def api_client(backend):
    return SyncApiClient(BASE_URL, "token-123", timeout=5, transport=httpx.MockTransport(backend.handler))


@pytest.fixture
def engine(db, outbox, api_client, network):
    sync_engine = SyncEngine(db, outbox, api_client, network)
    for adapter in default_adapters():
        sync_engine.register(adapter)
    sync_engine.configure(BASE_URL, "token-123", TECHNICIAN_ID)
    return sync_engine


@pytest.fixture
def inspection_template(db):
    """Template with a conditional follow-up: q3 shows only when q2 is false."""
    template = ChecklistTemplate.model_validate({
        "id": "tpl-1",
        "name": "HVAC inspection",
        "version": 3,
        "isActive": 1,
        "sections": [{"id": "s1", "title": "General", "order": 0}],
        "questions": [
            {"id": "title", "type": "SECTION_TITLE", "title": "General", "order": 0},
            {"id": "q1", "type": "TEXT_SHORT", "title": "Serial number", "isRequired": True, "order": 1},
            {"id": "q2", "type": "CHECKBOX", "title": "Unit working?", "isRequired": True, "order": 2},
            {
                "id": "q3",
                "type": "TEXT_LONG",
                "title": "Describe the failure",
                "isRequired": True,
                "order": 3,
                "conditionalLogic": {
                    "logic": "AND",
                    "rules": [{"questionId": "q2", "operator": "EQUALS", "value": False, "action": "SHOW"}],
                },
            },
            {
                "id": "q4",
                "type": "NUMBER",
                "title": "Pressure (psi)",
                "order": 4,
                "validations": {"min": 0, "max": 500},
            },
        ],
        "technicianId": TECHNICIAN_ID,
    })
    ChecklistTemplateRepository(db).upsert(template)
    return template


def make_work_order_row(work_order_id: str = "wo-1", **overrides) -> Dict[str, Any]:
    row = {
        "id": work_order_id,
        "clientId": "client-1",
        "title": "Replace compressor",
        "status": "SCHEDULED",
        "scheduledDate": "2024-03-10T13:00:00.000Z",
        "isActive": 1,
        "createdAt": "2024-03-01T10:00:00.000Z",
        "updatedAt": "2024-03-01T10:00:00.000Z",
        "technicianId": TECHNICIAN_ID,
    }
    row.update(overrides)
    return row
