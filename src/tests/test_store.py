from datetime import timedelta

import pytest

from engine.errors import ConflictError, PersistenceError
from engine.models import GitProvider, ScanJob, ScanStatus, utcnow
from utils.report_utils import build_report
from conftest import make_finding, persist_job


def test_create_and_find_by_id(store):
    job = ScanJob.create("https://example.com/a.git", GitProvider.GITLAB)
    assert store.create(job) == job.id

    found = store.find_by_id(job.id)
    assert found.repo_url == "https://example.com/a.git"
    assert found.provider == GitProvider.GITLAB
    assert found.status == ScanStatus.PENDING
    assert found.result is None


def test_find_by_id_unknown(store):
    assert store.find_by_id("does-not-exist") is None


def test_unique_in_flight_per_repo_and_provider(store):
    store.create(ScanJob.create("https://example.com/a.git", GitProvider.GITHUB))
    with pytest.raises(ConflictError):
        store.create(ScanJob.create("https://example.com/a.git", GitProvider.GITHUB))
    # other providers and finished scans do not count
    store.create(ScanJob.create("https://example.com/a.git", GitProvider.GITLAB))
    persist_job(store, status=ScanStatus.COMPLETED)
    persist_job(store, status=ScanStatus.FAILED)
    assert store.count() == 4


def test_find_one_in_flight(store):
    persist_job(store, status=ScanStatus.COMPLETED)
    assert store.find_one_in_flight("https://example.com/a.git", GitProvider.GITHUB) is None

    running = persist_job(store, status=ScanStatus.RUNNING)
    found = store.find_one_in_flight("https://example.com/a.git", GitProvider.GITHUB)
    assert found.id == running.id
    assert store.find_one_in_flight("https://example.com/a.git", GitProvider.GITLAB) is None


def test_save_persists_transition(store):
    job = persist_job(store, status=ScanStatus.PENDING)
    job.start()
    store.save(job, expected_status=ScanStatus.PENDING)
    job.succeed(build_report([make_finding("AWS", True)]))
    store.save(job, expected_status=ScanStatus.RUNNING)

    found = store.find_by_id(job.id)
    assert found.status == ScanStatus.COMPLETED
    assert found.finding_count == 1
    assert found.verified_finding_count == 1
    assert found.result["summary"]["detector_types"] == ["AWS"]


def test_save_with_stale_expected_status_is_rejected(store):
    job = persist_job(store, status=ScanStatus.RUNNING)
    job.fail("boom")
    with pytest.raises(PersistenceError):
        store.save(job, expected_status=ScanStatus.PENDING)
    assert store.find_by_id(job.id).status == ScanStatus.RUNNING


def test_save_after_remove_does_not_resurrect(store):
    job = persist_job(store, status=ScanStatus.RUNNING)
    assert store.remove(job.id) is True
    job.fail("boom")
    with pytest.raises(PersistenceError):
        store.save(job)
    assert store.find_by_id(job.id) is None
    assert store.remove(job.id) is False


def test_find_and_count_filters_and_pages(store):
    base = utcnow() - timedelta(hours=1)
    for index in range(5):
        persist_job(
            store,
            repo_url=f"https://github.com/acme/service-{index}.git",
            created_at=base + timedelta(minutes=index),
        )
    persist_job(store, repo_url="https://gitlab.com/other/tool.git", provider=GitProvider.GITLAB,
                status=ScanStatus.FAILED, created_at=base + timedelta(minutes=10))

    jobs, total = store.find_and_count(repo_url="acme", offset=0, limit=2)
    assert total == 5
    assert [job.repo_url for job in jobs] == [
        "https://github.com/acme/service-4.git",
        "https://github.com/acme/service-3.git",
    ]

    jobs, total = store.find_and_count(repo_url="acme", descending=False, offset=4, limit=2)
    assert total == 5
    assert [job.repo_url for job in jobs] == ["https://github.com/acme/service-4.git"]

    jobs, total = store.find_and_count(provider=GitProvider.GITLAB, status=ScanStatus.FAILED)
    assert total == 1 and jobs[0].repo_url == "https://gitlab.com/other/tool.git"

    jobs, total = store.find_and_count(provider=GitProvider.GITLAB, status=ScanStatus.COMPLETED)
    assert total == 0 and jobs == []


def test_repo_url_filter_escapes_wildcards(store):
    persist_job(store, repo_url="https://example.com/a.git")
    jobs, total = store.find_and_count(repo_url="%")
    assert total == 0


def test_aggregates(store):
    persist_job(store, repo_url="https://example.com/a.git",
                report=build_report([make_finding("AWS", False), make_finding("Slack", True)]))
    persist_job(store, repo_url="https://example.com/b.git",
                report=build_report([make_finding("AWS", True)]))
    persist_job(store, repo_url="https://example.com/c.git", status=ScanStatus.FAILED)
    persist_job(store, repo_url="https://example.com/d.git", status=ScanStatus.PENDING)

    assert store.count() == 4
    assert store.count([ScanStatus.COMPLETED]) == 2
    assert store.count([ScanStatus.PENDING, ScanStatus.RUNNING]) == 1
    assert store.sum_finding_count(ScanStatus.COMPLETED) == 3
    assert sorted(store.completed_detector_types()) == [["AWS"], ["AWS", "Slack"]]


def test_find_stale_in_flight(store):
    old = utcnow() - timedelta(hours=3)
    stale = persist_job(store, repo_url="https://example.com/stale.git", status=ScanStatus.RUNNING, updated_at=old)
    persist_job(store, repo_url="https://example.com/fresh.git", status=ScanStatus.RUNNING)
    persist_job(store, repo_url="https://example.com/done.git", updated_at=old)

    found = store.find_stale_in_flight(utcnow() - timedelta(hours=1))
    assert [job.id for job in found] == [stale.id]


def test_delete_older_than(store):
    persist_job(store, repo_url="https://example.com/old.git", created_at=utcnow() - timedelta(days=40))
    recent = persist_job(store, repo_url="https://example.com/new.git")

    assert store.delete_older_than(utcnow() - timedelta(days=30)) == 1
    assert store.count() == 1
    assert store.find_by_id(recent.id) is not None


def test_ping(store):
    assert store.ping() is True
