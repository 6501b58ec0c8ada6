"""Tests for metadata job API routes."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI

from shelfarr.core.comicinfo import ComicInfo
from shelfarr.core.config import Settings
from shelfarr.core.database import SessionFactory
from shelfarr.core.dependencies import get_job_service
from shelfarr.core.exceptions import SourceConfigurationError
from shelfarr.core.jobs import JobStore, MetadataJobService
from shelfarr.core.sources.registry import SourceRegistry
from shelfarr.routes.metadata_jobs import create_metadata_jobs_router

BATMAN = {"source": "comicvine", "source_id": "42721"}
SAGA = {"source": "comicvine", "source_id": "47399"}


@pytest.fixture
async def service(
    session_factory: SessionFactory,
    registry: SourceRegistry,
    isolated_settings: Settings,
) -> AsyncIterator[MetadataJobService]:
    service = MetadataJobService(JobStore(session_factory), registry, settings=isolated_settings)
    yield service
    await service.processor.shutdown()


@pytest.fixture
async def client(service: MetadataJobService) -> AsyncIterator[httpx.AsyncClient]:
    """API client for an app exposing only the metadata job routes."""
    app = FastAPI()
    app.state.job_service = service
    app.include_router(create_metadata_jobs_router(get_job_service))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def library(tmp_path: Path, make_cbz: Callable[..., Path]) -> list[Path]:
    folder = tmp_path / "comics"
    return [
        make_cbz(folder / "Batman 001 (2011).cbz", ComicInfo(series="Batman", publisher="DC")),
        make_cbz(folder / "Batman 002 (2011).cbz"),
        make_cbz(folder / "Saga #1 (2012).cbz"),
    ]


async def _create(client: httpx.AsyncClient, paths: list[Path]) -> dict:
    response = await client.post("/api/metadata-jobs", json={"files": [str(path) for path in paths]})
    assert response.status_code == 201
    return response.json()


async def _start(client: httpx.AsyncClient, service: MetadataJobService, paths: list[Path]) -> dict:
    job = await _create(client, paths)
    response = await client.post(f"/api/metadata-jobs/{job['id']}/start")
    assert response.status_code == 200
    await service.processor.wait(job["id"])
    return (await client.get(f"/api/metadata-jobs/{job['id']}")).json()["job"]


async def _approve(
    client: httpx.AsyncClient, service: MetadataJobService, job_id: str, series: dict
) -> dict:
    response = await client.post(f"/api/metadata-jobs/{job_id}/approve-series", json={"series": series})
    assert response.status_code == 200
    await service.processor.wait(job_id)
    return (await client.get(f"/api/metadata-jobs/{job_id}")).json()["job"]


async def test_create_and_list_jobs(client: httpx.AsyncClient) -> None:
    """Test creating a job and finding it in the job list."""
    job = await _create(client, [Path("/comics/a.cbz"), Path("/comics/b.cbz")])

    assert job["status"] == "options"
    assert len(job["files"]) == 2

    response = await client.get("/api/metadata-jobs")
    assert response.status_code == 200
    summaries = response.json()["jobs"]
    assert [(item["id"], item["file_count"]) for item in summaries] == [(job["id"], 2)]

    response = await client.get(f"/api/metadata-jobs/{job['id']}")
    assert response.status_code == 200
    data = response.json()
    assert data["job"]["id"] == job["id"]
    assert data["logs"][0]["message"] == "Job created"


async def test_create_job_validation(client: httpx.AsyncClient) -> None:
    """Test that empty and blank file lists are rejected."""
    response = await client.post("/api/metadata-jobs", json={"files": []})
    assert response.status_code == 422

    response = await client.post("/api/metadata-jobs", json={"files": ["  "]})
    assert response.status_code == 400


async def test_unknown_job(client: httpx.AsyncClient) -> None:
    """Test that unknown jobs answer 404."""
    response = await client.get("/api/metadata-jobs/missing")
    assert response.status_code == 404

    response = await client.post("/api/metadata-jobs/missing/cancel")
    assert response.status_code == 404


async def test_update_options(client: httpx.AsyncClient) -> None:
    """Test that options can be changed before the job starts."""
    job = await _create(client, [Path("/comics/a.cbz")])

    response = await client.patch(
        f"/api/metadata-jobs/{job['id']}/options", json={"search_mode": "full"}
    )

    assert response.status_code == 200
    assert response.json()["options"]["search_mode"] == "full"


async def test_wrong_step_is_conflict(
    client: httpx.AsyncClient, service: MetadataJobService, library: list[Path]
) -> None:
    """Test that operations outside their step answer 409."""
    job = await _start(client, service, library)
    assert job["status"] == "series_approval"

    response = await client.post(f"/api/metadata-jobs/{job['id']}/apply")
    assert response.status_code == 409

    response = await client.get(f"/api/metadata-jobs/{job['id']}/apply-result")
    assert response.status_code == 404

    response = await client.delete(f"/api/metadata-jobs/{job['id']}")
    assert response.status_code == 409


async def test_source_configuration_error(
    client: httpx.AsyncClient, service: MetadataJobService, library: list[Path], sources
) -> None:
    """Test that rejected credentials answer 424 with a hint."""
    job = await _start(client, service, library)
    sources["comicvine"].search_error = SourceConfigurationError("comicvine", "bad key", hint="Add a key")

    response = await client.post(
        f"/api/metadata-jobs/{job['id']}/search", json={"query": "Batman", "source": "comicvine"}
    )

    assert response.status_code == 424
    assert response.json()["detail"] == {"source": "comicvine", "message": "bad key", "hint": "Add a key"}


async def test_review_and_apply(
    client: httpx.AsyncClient, service: MetadataJobService, library: list[Path]
) -> None:
    """Test the whole workflow over HTTP."""
    job = await _start(client, service, library)
    job_id = job["id"]
    assert [group["display_name"] for group in job["state"]["series_groups"]] == ["Batman", "Saga"]

    job = await _approve(client, service, job_id, BATMAN)
    assert job["current_series_index"] == 1
    job = await _approve(client, service, job_id, SAGA)
    assert job["status"] == "file_review"

    response = await client.get(f"/api/metadata-jobs/{job_id}/files", params={"group_index": 0})
    assert response.status_code == 200
    batman_files = response.json()["files"]
    assert [item["filename"] for item in batman_files] == ["Batman 001 (2011).cbz", "Batman 002 (2011).cbz"]

    file_id = batman_files[0]["file_id"]
    response = await client.get(f"/api/metadata-jobs/{job_id}/files/{file_id}/issues")
    assert response.status_code == 200
    assert len(response.json()["issues"]) == 3

    response = await client.patch(
        f"/api/metadata-jobs/{job_id}/files/{file_id}/fields",
        json={"fields": {"publisher": {"approved": False}}},
    )
    assert response.status_code == 200
    assert response.json()["fields"]["publisher"]["approved"] is False

    saga_id = job["state"]["file_changes"][2]["file_id"]
    response = await client.post(f"/api/metadata-jobs/{job_id}/reject-all", json={"file_ids": [saga_id]})
    assert response.json() == {"count": 1}

    response = await client.post(f"/api/metadata-jobs/{job_id}/apply")
    assert response.status_code == 200
    await service.processor.wait(job_id)

    response = await client.get(f"/api/metadata-jobs/{job_id}/apply-result")
    assert response.status_code == 200
    result = response.json()
    assert (result["successful"], result["skipped"], result["failed"]) == (2, 1, 0)

    response = await client.get(f"/api/metadata-jobs/{job_id}")
    assert response.json()["job"]["status"] == "complete"

    response = await client.delete(f"/api/metadata-jobs/{job_id}")
    assert response.status_code == 204
    response = await client.get(f"/api/metadata-jobs/{job_id}")
    assert response.status_code == 404


async def test_abandon(client: httpx.AsyncClient, service: MetadataJobService, library: list[Path]) -> None:
    """Test that abandoning removes the job in any step."""
    job = await _start(client, service, library)

    response = await client.post(f"/api/metadata-jobs/{job['id']}/abandon")

    assert response.status_code == 204
    response = await client.get(f"/api/metadata-jobs/{job['id']}")
    assert response.status_code == 404


async def test_update_series_sources(
    client: httpx.AsyncClient, service: MetadataJobService, library: list[Path]
) -> None:
    """Test confirming a cross-source match over HTTP."""
    job = await _start(client, service, library)
    job_id = job["id"]
    await _approve(client, service, job_id, BATMAN)
    await _approve(client, service, job_id, SAGA)

    response = await client.patch(
        f"/api/metadata-jobs/{job_id}/series/0/sources", json={"accepted_sources": ["metron"]}
    )
    assert response.status_code == 200
    await service.processor.wait(job_id)

    job = (await client.get(f"/api/metadata-jobs/{job_id}")).json()["job"]
    merged = job["state"]["series_groups"][0]["merged_series"]
    assert job["status"] == "file_review"
    assert merged["accepted_sources"] == ["metron"]
    assert merged["series_type"] == "Ongoing Series"

    response = await client.patch(
        f"/api/metadata-jobs/{job_id}/series/0/sources", json={"accepted_sources": ["gcd"]}
    )
    assert response.status_code == 400
    response = await client.patch(
        f"/api/metadata-jobs/{job_id}/series/0/sources", json={"accepted_sources": ["nowhere"]}
    )
    assert response.status_code == 422
