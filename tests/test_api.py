"""HTTP surface tests. Components are built from a temporary runtime.yaml."""

from unittest.mock import MagicMock

import pytest
import yaml
from fastapi.testclient import TestClient

import sandbox_runners
from api.main import build_components, create_app
from conftest import ARTIFACT, ORACLE_KEY, FakeGateway, request_payload
from config.settings import load_runtime_config
from executor.dispatch import InlineDispatcher


def artifact_session():
    resp = MagicMock()
    resp.status_code = 200
    resp.headers = {"Content-Length": str(len(ARTIFACT))}
    resp.iter_content.return_value = [ARTIFACT]
    session = MagicMock()
    session.get.return_value = resp
    return session


@pytest.fixture
def runtime(tmp_path):
    path = tmp_path / "runtime.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "runtime": {"role": "dev"},
                "storage": {"driver": "sqlite", "sqlite": {"path": "state/dvm.sqlite"}},
                "scheduler": {"enabled": False},
                "executor": {"workers": 1, "max_time_ms": 600_000, "start_method": "spawn"},
                "pricing": {"msats_per_ms": 1000},
                "oracle": {"public_key": ORACLE_KEY, "name": "test-oracle"},
            }
        ),
        encoding="utf-8",
    )
    return load_runtime_config(path)


@pytest.fixture
def client(runtime, clock):
    components = build_components(
        runtime,
        clock=clock,
        gateway=FakeGateway(),
        runner=sandbox_runners.echo,
        session=artifact_session(),
        dispatcher=InlineDispatcher(),
    )
    with TestClient(create_app(components)) as c:
        yield c


class TestHealth:
    def test_ok(self, client):
        assert client.get("/health").json() == {"status": "ok"}


class TestJobs:
    def test_pay_per_use_round_trip(self, client):
        res = client.post("/jobs", json={"requester": "alice", "request": request_payload(input="hi")})
        assert res.status_code == 402
        invoice = res.json()["invoice"]
        assert invoice["amount_msats"] == 1_000_000

        settled = client.post("/payments/settled", json={"payment_hash": invoice["payment_hash"]})
        assert settled.status_code == 200
        job = settled.json()["job"]
        assert job["state"] == "completed"
        assert job["output"] == f"run:hi:{len(ARTIFACT)}"

        detail = client.get(f"/jobs/{job['job_id']}").json()
        assert detail["job"]["result_id"] is not None
        assert [e["event_type"] for e in detail["events"]][-1] == "job_published"

    def test_malformed_request(self, client):
        res = client.post("/jobs", json={"requester": "alice", "request": request_payload(checksum="nope")})
        assert res.status_code == 422
        body = res.json()
        assert body["error"] == "MalformedRequest"
        assert body["violations"][0]["path"] == "/checksum"

    def test_missing_requester(self, client):
        res = client.post("/jobs", json={"request": request_payload()})
        assert res.status_code == 422

    def test_unknown_job(self, client):
        res = client.get("/jobs/missing")
        assert res.status_code == 404
        assert res.json()["resource_type"] == "Job"

    def test_past_schedule(self, client, clock):
        res = client.post(
            "/jobs", json={"requester": "alice", "request": request_payload(schedule={"run_date": clock.unix() - 1})}
        )
        assert res.status_code == 422
        assert res.json()["error"] == "InvalidSchedule"


class TestAccounts:
    def test_deposit_then_prepaid_job(self, client, clock):
        invoice = client.post("/accounts/alice/deposit", json={"amount_msats": 2_000_000}).json()["invoice"]
        client.post("/payments/settled", json={"payment_hash": invoice["payment_hash"]})
        assert client.get("/accounts/alice").json()["account"]["balance_msats"] == 2_000_000

        payload = request_payload(schedule={"run_date": clock.unix() + 60})
        res = client.post("/jobs", json={"requester": "alice", "request": payload})
        assert res.status_code == 200
        job = res.json()["job"]
        assert job["state"] == "awaiting_trigger"
        assert client.get("/accounts/alice").json()["account"]["balance_msats"] == 1_000_000

        again = client.post("/jobs", json={"requester": "alice", "request": payload})
        assert again.status_code == 409
        assert again.json()["error"] == "DuplicateJob"

        later = client.post(f"/jobs/{job['job_id']}/reschedule", json={"run_date": clock.unix() + 120})
        assert later.json()["job"]["run_date"] == clock.unix() + 120

        triggered = client.post(f"/jobs/{job['job_id']}/trigger")
        assert triggered.json() == {"job_id": job["job_id"], "queued": True}
        assert client.get(f"/jobs/{job['job_id']}").json()["job"]["state"] == "completed"

        assert client.post(f"/jobs/{job['job_id']}/trigger").status_code == 409

    def test_unknown_account(self, client):
        assert client.get("/accounts/nobody").status_code == 404


class TestEvents:
    def test_register_and_attest(self, client):
        res = client.post("/events", json={"name": "rain", "outcomes": ["yes", "no"]})
        assert res.status_code == 200
        assert res.json()["event"]["announcement_event_id"] is not None

        assert client.post("/events", json={"name": "rain", "nb_digits": 2}).status_code == 409

        bad = client.post("/events/rain/attest", json={"outcome": "maybe", "signature": "s"})
        assert bad.status_code == 422
        assert bad.json()["error"] == "InvalidOutcome"

        ok = client.post("/events/rain/attest", json={"outcome": "yes", "signature": "s"})
        assert ok.json()["event"]["outcome"] == "yes"
        assert ok.json()["event"]["signatures"] == ["s"]

        again = client.post("/events/rain/attest", json={"outcome": "no", "signature": "s"})
        assert again.status_code == 409
        assert again.json()["error"] == "AlreadyAttested"

    def test_unknown_event(self, client):
        assert client.get("/events/nope").status_code == 404
        assert client.post("/events/nope/attest", json={"outcome": "a", "signature": "s"}).status_code == 404
