"""Tests for the audit endpoints: event trail and lineage."""

import pytest


def events_url(project_id: int) -> str:
    return f"/api/audit/projects/{project_id}/audit/events"


def lineage_url(project_id: int) -> str:
    return f"/api/audit/projects/{project_id}/audit/lineage"


async def finish_run(client, supervisor, project_id: int) -> int:
    run_id = (await client.post(f"/api/processing/projects/{project_id}/processing/start")).json()["data"]["id"]
    await supervisor.wait(run_id, timeout=5)
    return run_id


@pytest.mark.asyncio
class TestAuditEvents:
    async def test_lifecycle_events_newest_first(self, member_client, seed, supervisor):
        start = await member_client.post(f"/api/processing/projects/{seed.project_id}/processing/start")
        run_id = start.json()["data"]["id"]
        await supervisor.wait(run_id, timeout=5)

        resp = await member_client.get(events_url(seed.project_id))
        assert resp.status_code == 200
        events = resp.json()["data"]
        assert [e["eventType"] for e in events] == ["processing.completed", "processing.started"]
        assert all(e["resourceType"] == "processing_run" and e["resourceId"] == run_id for e in events)

        started = events[1]
        assert started["userId"] == seed.user_id
        assert started["eventData"]["totalRecords"] == 120
        # raised by the background sequencer, not a user
        assert events[0]["userId"] is None
        assert started["userName"] == "Acme Member"
        assert events[0]["userName"] is None

    async def test_filter_by_event_type(self, member_client, seed, stage_gate):
        stage_gate.clear()
        start = await member_client.post(f"/api/processing/projects/{seed.project_id}/processing/start")
        run_id = start.json()["data"]["id"]
        await member_client.post(f"/api/processing/runs/{run_id}/cancel")

        resp = await member_client.get(events_url(seed.project_id), params={"eventType": "processing.cancelled"})
        body = resp.json()
        assert body["pagination"]["total"] == 1
        assert body["data"][0]["eventType"] == "processing.cancelled"
        assert body["data"][0]["eventData"] == {"runId": run_id}

    async def test_viewer_may_read(self, viewer_client, seed):
        resp = await viewer_client.get(events_url(seed.project_id))
        assert resp.status_code == 200
        assert resp.json()["data"] == []

    async def test_other_organisation_is_not_found(self, outsider_client, seed):
        resp = await outsider_client.get(events_url(seed.project_id))
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "Project not found"


@pytest.mark.asyncio
class TestProjectLineage:
    async def test_sources_feed_every_run(self, member_client, seed, supervisor):
        first = await finish_run(member_client, supervisor, seed.project_id)
        second = await finish_run(member_client, supervisor, seed.project_id)

        resp = await member_client.get(lineage_url(seed.project_id))
        assert resp.status_code == 200
        lineage = resp.json()["data"]

        sources = lineage["sources"]
        assert [s["name"] for s in sources] == ["tickets.csv", "chat-export.json"]
        assert sources[0]["type"] == "file"
        assert sources[0]["recordCount"] == 120

        runs = lineage["processingRuns"]
        assert [r["id"] for r in runs] == [second, first]
        assert runs[0]["status"] == "completed"
        assert runs[0]["totalRecords"] == runs[0]["processedRecords"] == 120
        assert runs[0]["completedAt"] is not None

        source_nodes = [f"source-{s['id']}" for s in sources]
        assert lineage["nodes"] == [
            {"id": source_nodes[0], "type": "source", "label": "tickets.csv"},
            {"id": source_nodes[1], "type": "source", "label": "chat-export.json"},
            {"id": f"run-{second}", "type": "processing", "label": f"Run #{second}"},
            {"id": f"run-{first}", "type": "processing", "label": f"Run #{first}"},
        ]
        assert len(lineage["edges"]) == 4
        assert {"from": source_nodes[1], "to": f"run-{first}"} in lineage["edges"]
        assert "exports" not in lineage

    async def test_project_without_runs(self, member_client, seed):
        resp = await member_client.get(lineage_url(seed.empty_project_id))
        lineage = resp.json()["data"]
        assert [s["name"] for s in lineage["sources"]] == ["broken.xlsx"]
        assert lineage["processingRuns"] == []
        assert lineage["edges"] == []
        assert lineage["nodes"] == [
            {"id": f"source-{lineage['sources'][0]['id']}", "type": "source", "label": "broken.xlsx"},
        ]

    async def test_other_organisation_is_not_found(self, outsider_client, seed):
        resp = await outsider_client.get(lineage_url(seed.project_id))
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "Project not found"
