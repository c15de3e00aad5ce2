from __future__ import annotations

from datetime import timedelta

from appgen.memory.schema import GenerationJob, JobContext, JobStatus, Project, utc_now
from appgen.memory.store import AppStore
from appgen.tools.workspace import ProjectFile


def test_job_lifecycle_stamps_timestamps(tmp_path) -> None:
    with AppStore(tmp_path / "appgen.sqlite") as store:
        job = store.submit_job("user-1", "Build a quiz", JobContext(prompt="Build a quiz"))
        assert job.status is JobStatus.PENDING

        started = store.update_job_status(job.id, JobStatus.PROCESSING)
        assert started is not None and started.started_at is not None

        progress = store.update_job_status(job.id, JobStatus.PROCESSING, result={"status": "deployment_retry"})
        assert progress is not None
        assert progress.started_at == started.started_at
        assert progress.result == {"status": "deployment_retry"}
        assert progress.completed_at is None

        done = store.update_job_status(job.id, JobStatus.COMPLETED, result={"projectId": "p1"})
        assert done is not None
        assert done.status is JobStatus.COMPLETED
        assert done.completed_at is not None
        assert done.context.prompt == "Build a quiz"


def test_pending_jobs_are_oldest_first_and_user_jobs_newest_first(store) -> None:
    now = utc_now()
    for index in range(3):
        store.create_job(
            GenerationJob(
                id=f"job-{index}",
                user_id="user-1",
                prompt=f"prompt {index}",
                created_at=now + timedelta(seconds=index),
            )
        )
    store.update_job_status("job-1", JobStatus.PROCESSING)

    assert [job.id for job in store.list_pending_jobs()] == ["job-0", "job-2"]
    assert [job.id for job in store.list_user_jobs("user-1")] == ["job-2", "job-1", "job-0"]
    assert store.list_user_jobs("someone-else") == []


def test_expired_jobs_are_deleted(store) -> None:
    now = utc_now()
    store.create_job(GenerationJob(id="old", user_id="u", prompt="p", expires_at=now - timedelta(minutes=1)))
    store.create_job(GenerationJob(id="fresh", user_id="u", prompt="p"))

    assert store.delete_expired_jobs(now=now) == 1
    assert store.get_job("old") is None
    assert store.get_job("fresh") is not None


def test_project_upsert_and_update(store) -> None:
    store.create_project(Project(id="p1", user_id="u", name="Quiz App"))

    updated = store.update_project("p1", preview_url="https://p1.minidev.fun")

    assert updated is not None
    assert updated.preview_url == "https://p1.minidev.fun"
    assert store.get_project("p1").name == "Quiz App"
    assert store.update_project("missing", name="x") is None
    assert [project.id for project in store.list_projects("u")] == ["p1"]


def test_file_replace_skips_nul_content_and_upsert_overlays(store) -> None:
    saved = store.replace_project_files(
        "p1",
        [
            ProjectFile("src/app/page.tsx", "v1"),
            ProjectFile("public/logo.png", "\x00binary"),
            ProjectFile("package.json", "{}"),
        ],
    )
    assert saved == 2

    store.upsert_project_files("p1", [ProjectFile("src/app/page.tsx", "v2"), ProjectFile("src/lib/a.ts", "a")])

    files = {item.filename: item.content for item in store.get_project_files("p1")}
    assert files == {"package.json": "{}", "src/app/page.tsx": "v2", "src/lib/a.ts": "a"}

    version = store._conn.execute(
        "SELECT version FROM project_files WHERE project_id = ? AND filename = ?", ("p1", "src/app/page.tsx")
    ).fetchone()[0]
    assert version == 2

    store.replace_project_files("p1", [ProjectFile("README.md", "docs")])
    assert [item.filename for item in store.get_project_files("p1")] == ["README.md"]


def test_patches_and_deployments(store) -> None:
    first = store.save_patch("p1", {"changedFiles": ["a.ts"]}, "Updated 1 file(s): a.ts")
    store.save_patch("p1", {"changedFiles": ["b.ts"]}, "Updated 1 file(s): b.ts")

    patches = store.list_patches("p1")
    assert len(patches) == 2
    assert store.get_patch(first.id).data == {"changedFiles": ["a.ts"]}

    reverted = store.revert_patch(first.id)
    assert reverted is not None and reverted.reverted_at is not None

    deployment = store.create_deployment(
        "p1",
        "vercel",
        "https://p1.vercel.app",
        "success",
        contract_addresses={"Token": "0xabc"},
    )
    listed = store.list_deployments("p1")
    assert [item.id for item in listed] == [deployment.id]
    assert listed[0].contract_addresses == {"Token": "0xabc"}


def test_store_from_config_uses_db_path(tmp_path) -> None:
    db_path = tmp_path / "nested" / "jobs.sqlite"

    with AppStore.from_config({"paths": {"db_path": str(db_path)}}) as store:
        store.submit_job("u", "p", JobContext())

    assert db_path.exists()
