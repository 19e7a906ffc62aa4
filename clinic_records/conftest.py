import json
import uuid
from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from clinic_records.backend import SINGLE_OBJECT
from clinic_records.config import Settings
from clinic_records.database import create_gateway, get_gateway
from clinic_records.main import app

TEST_URL = "https://test-project.supabase.co"


def _now():
    return datetime.now(timezone.utc).isoformat()


def _json(request):
    return json.loads(request.content or b"null")


def _no_rows():
    return httpx.Response(
        406,
        json={
            "code": "PGRST116",
            "details": "The result contains 0 rows",
            "message": "JSON object requested, multiple (or no) rows returned",
        },
    )


class FakeBackend:
    """
    In-memory stand-in for the database and storage HTTP APIs, covering
    the subset of PostgREST and Storage the client uses.
    """

    TABLES = ("patients", "medical_history", "appointments", "patient_files")
    TIMESTAMPED = ("patients", "medical_history", "appointments")
    PATIENT_REFERENCES = ("medical_history", "appointments", "patient_files")

    def __init__(self):
        self.tables = {name: [] for name in self.TABLES}
        self.objects = {}  # "bucket/key" -> bytes
        self.failures = set()
        self.offline = False
        self.requests = []

    def fail(self, method, path_prefix):
        """Make every request matching method and path prefix return a 500."""
        self.failures.add((method, path_prefix))

    def seed(self, table, **row):
        row.setdefault("id", str(uuid.uuid4()))
        if table in self.TIMESTAMPED:
            row.setdefault("created_at", _now())
            row.setdefault("updated_at", row["created_at"])
        if table == "patients":
            row.setdefault("treatments", 0)
        if table == "patient_files":
            row.setdefault("upload_date", _now())
        self.tables[table].append(row)
        return row

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("backend unreachable", request=request)

        method, path = request.method, request.url.path
        for failing_method, prefix in self.failures:
            if method == failing_method and path.startswith(prefix):
                return httpx.Response(
                    500, json={"code": "XX000", "message": "injected failure"}
                )

        if path.startswith("/rest/v1/rpc/"):
            return self._rpc(request, path[len("/rest/v1/rpc/"):])
        if path.startswith("/rest/v1/"):
            table = path[len("/rest/v1/"):]
            if table not in self.tables:
                return httpx.Response(
                    404, json={"code": "42P01", "message": f"relation {table} does not exist"}
                )
            return self._table(request, table)
        if path.startswith("/storage/v1/object/sign/"):
            return self._sign(request, path[len("/storage/v1/object/sign/"):])
        if path.startswith("/storage/v1/object/"):
            return self._object(request, path[len("/storage/v1/object/"):])
        return httpx.Response(404, json={"message": "route not found"})

    # Database

    def _matching(self, request, table):
        filters = {
            column: value[len("eq."):]
            for column, value in request.url.params.multi_items()
            if column not in ("select", "order") and value.startswith("eq.")
        }
        return [
            row for row in self.tables[table]
            if all(str(row.get(column)) == value for column, value in filters.items())
        ]

    def _patient(self, patient_id):
        for row in self.tables["patients"]:
            if row["id"] == patient_id:
                return row
        return None

    def _violates_reference(self, table, row):
        return (
            table in self.PATIENT_REFERENCES
            and "patient_id" in row
            and self._patient(row["patient_id"]) is None
        )

    def _fk_error(self, table):
        return httpx.Response(
            409,
            json={
                "code": "23503",
                "message": f'insert or update on table "{table}" violates foreign key constraint',
            },
        )

    def _table(self, request, table):
        single = request.headers.get("accept") == SINGLE_OBJECT
        if request.method == "GET":
            rows = self._select(request, table)
        elif request.method == "POST":
            body = _json(request)
            new_rows = body if isinstance(body, list) else [body]
            for row in new_rows:
                if self._violates_reference(table, row):
                    return self._fk_error(table)
            rows = [self.seed(table, **row) for row in new_rows]
            if single and len(rows) == 1:
                return httpx.Response(201, json=rows[0])
            return httpx.Response(201, json=rows)
        elif request.method == "PATCH":
            values = _json(request)
            if self._violates_reference(table, values):
                return self._fk_error(table)
            rows = self._matching(request, table)
            if single and len(rows) != 1:
                return _no_rows()
            for row in rows:
                row.update(values)
        elif request.method == "DELETE":
            for row in self._matching(request, table):
                self.tables[table].remove(row)
            return httpx.Response(204)
        else:
            return httpx.Response(405, json={"message": "method not allowed"})

        if single:
            if len(rows) != 1:
                return _no_rows()
            return httpx.Response(200, json=rows[0])
        return httpx.Response(200, json=rows)

    def _select(self, request, table):
        select = request.url.params.get("select", "*")
        columns = [c for c in select.split(",") if "(" not in c]
        join_patient = "patients!inner(" in select

        rows = []
        for row in self._matching(request, table):
            row = dict(row)
            if join_patient:
                patient = self._patient(row.get("patient_id"))
                if patient is None:
                    continue
                row["patients"] = {"name": patient["name"]}
            if "*" not in columns:
                row = {c: row.get(c) for c in columns}
            rows.append(row)

        order = request.url.params.get("order")
        if order:
            column, _, direction = order.partition(".")
            rows.sort(
                key=lambda r: (r.get(column) is None, r.get(column)),
                reverse=direction == "desc",
            )
        return rows

    def _rpc(self, request, function):
        if function != "increment_patient_treatments":
            return httpx.Response(
                404, json={"code": "PGRST202", "message": f"function {function} not found"}
            )
        patient = self._patient((_json(request) or {}).get("patient_id"))
        if patient is not None:
            patient["treatments"] += 1
        return httpx.Response(204)

    # Storage

    def _object(self, request, rest):
        bucket, _, key = rest.partition("/")
        if request.method == "POST":
            name = f"{bucket}/{key}"
            if name in self.objects:
                return httpx.Response(
                    400,
                    json={"statusCode": "409", "error": "Duplicate",
                          "message": "The resource already exists"},
                )
            self.objects[name] = request.content
            return httpx.Response(200, json={"Key": name, "Id": str(uuid.uuid4())})
        if request.method == "DELETE" and not key:
            removed = []
            for prefix in (_json(request) or {}).get("prefixes", []):
                if self.objects.pop(f"{bucket}/{prefix}", None) is not None:
                    removed.append({"name": prefix, "bucket_id": bucket})
            return httpx.Response(200, json=removed)
        return httpx.Response(405, json={"message": "method not allowed"})

    def _sign(self, request, rest):
        bucket, _, key = rest.partition("/")
        if f"{bucket}/{key}" not in self.objects:
            return httpx.Response(
                400,
                json={"statusCode": "404", "error": "not_found", "message": "Object not found"},
            )
        expires_in = (_json(request) or {}).get("expiresIn")
        return httpx.Response(
            200,
            json={"signedURL": f"/object/sign/{bucket}/{key}?token=fake-{expires_in}"},
        )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def settings():
    return Settings(supabase_url=TEST_URL, supabase_anon_key="anon-key")


@pytest_asyncio.fixture
async def gateway(backend, settings):
    """
    Provide a gateway whose HTTP traffic is served by the fake backend.
    """
    gateway = create_gateway(settings, transport=httpx.MockTransport(backend.handler))
    yield gateway
    await gateway.client.aclose()


@pytest_asyncio.fixture
async def client(gateway):
    """
    Provide an async test client with the gateway override.
    """
    app.dependency_overrides[get_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
