from __future__ import annotations

import threading
import time

import pytest

from mdm_inventory.graph.export_jobs import (
    CREATE_SNAPSHOT_URL,
    ExportJobDriver,
    JobStatus,
    job_url,
    parse_export_payload,
    parse_job,
    sanitize_label,
)
from mdm_inventory.util.errors import (
    CaptureCancelled,
    ExportFormatError,
    ExportJobError,
    ExportJobTimeout,
    TransportError,
)

LOCATION = "https://graph.microsoft.com/beta/snapshots/result.json"


class _FakeClient:
    """
    Serves a fixed sequence of job states for GET on the job URL.
    """

    def __init__(self, statuses, payload=None, *, fail_create=False, fail_delete=False) -> None:
        self.statuses = list(statuses)
        self.payload = payload if payload is not None else {"resources": []}
        self.fail_create = fail_create
        self.fail_delete = fail_delete
        self.posts = []
        self.gets = []
        self.deletes = []

    def post_json(self, url, body):
        self.posts.append((url, body))
        if self.fail_create:
            raise TransportError("forbidden", status_code=403)
        return {"id": "job-1", "status": "notStarted", "resources": body["resources"]}

    def get_json(self, url):
        self.gets.append(url)
        if url == LOCATION:
            return self.payload
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        body = {"id": "job-1", "status": status}
        if status in ("succeeded", "partiallySuccessful"):
            body["resourceLocation"] = LOCATION
        if status in ("failed", "partiallySuccessful"):
            body["errorDetails"] = ["resource X not licensed"]
        return body

    def delete(self, url):
        self.deletes.append(url)
        if self.fail_delete:
            raise TransportError("gone", status_code=404)


def _driver(client, **kwargs) -> ExportJobDriver:
    kwargs.setdefault("poll_interval", 0.001)
    kwargs.setdefault("timeout", 5.0)
    return ExportJobDriver(client, **kwargs)


# ---- payload shapes ----


def test_parse_structured_payload() -> None:
    result = parse_export_payload(
        {"resources": [{"resourceType": "microsoft.intune.roleDefinition", "instances": [{"Id": "1"}, {"Id": "2"}]}]}
    )
    assert [g.resource_type for g in result.groups] == ["microsoft.intune.roleDefinition"]
    assert result.instance_count == 2


def test_parse_top_level_group_list() -> None:
    result = parse_export_payload([{"resourceType": "a", "instances": [{}]}, {"resourceType": "b", "instances": []}])
    assert [g.resource_type for g in result.groups] == ["a", "b"]


def test_parse_type_map() -> None:
    result = parse_export_payload({"microsoft.intune.deviceCategory": [{"DisplayName": "Kiosk"}]})
    assert result.groups[0].resource_type == "microsoft.intune.deviceCategory"
    assert result.groups[0].instances == [{"DisplayName": "Kiosk"}]


def test_parse_collection_groups_by_embedded_type() -> None:
    result = parse_export_payload(
        {
            "@odata.context": "https://graph.microsoft.com/beta/$metadata",
            "value": [
                {"resourceType": "a", "id": "1"},
                {"@odata.type": "#microsoft.graph.b", "id": "2"},
                {"id": "3"},
                {"resourceType": "a", "id": "4"},
            ],
        }
    )
    by_type = {g.resource_type: len(g.instances) for g in result.groups}
    assert by_type == {"a": 2, "#microsoft.graph.b": 1, "unknown": 1}


@pytest.mark.parametrize("payload", [{}, [], {"resources": []}, {"value": []}, "text", 42])
def test_unrecognised_payload_raises_format_error(payload) -> None:
    with pytest.raises(ExportFormatError):
        parse_export_payload(payload)


# ---- job parsing ----


def test_parse_job_maps_wire_statuses() -> None:
    assert parse_job({"id": "j", "status": "notStarted"}).status == JobStatus.NOT_STARTED
    assert parse_job({"id": "j", "status": "partiallySuccessful"}).status == JobStatus.PARTIALLY_SUCCEEDED
    unknown = parse_job({"id": "j", "status": "queued"})
    assert unknown.status == JobStatus.RUNNING
    assert unknown.raw_status == "queued"


def test_parse_job_without_id_raises() -> None:
    with pytest.raises(ExportJobError):
        parse_job({"status": "running"})


def test_sanitize_label() -> None:
    assert sanitize_label("Inventory  intune-corp / 1700000000000") == "Inventory intune corp 1700000000000"


# ---- driver ----


def test_create_posts_sanitized_label_and_resources() -> None:
    client = _FakeClient(["running"])
    job = _driver(client).create(["microsoft.intune.policySets"], "Inventory corp.eu 1")
    url, body = client.posts[0]
    assert url == CREATE_SNAPSHOT_URL
    assert body["displayName"] == "Inventory corp eu 1"
    assert body["resources"] == ["microsoft.intune.policySets"]
    assert job.id == "job-1"


def test_create_failure_is_export_job_error() -> None:
    client = _FakeClient(["running"], fail_create=True)
    with pytest.raises(ExportJobError) as exc:
        _driver(client).create(["x"], "label")
    assert isinstance(exc.value.__cause__, TransportError)


def test_wait_until_done_reports_progress_until_success() -> None:
    client = _FakeClient(["notStarted", "running", "succeeded"])
    seen = []
    job = _driver(client).wait_until_done("job-1", on_progress=seen.append)
    assert seen == ["not-started", "running", "succeeded"]
    assert job.location == LOCATION


def test_partial_success_is_returned() -> None:
    client = _FakeClient(["partiallySuccessful"])
    job = _driver(client).wait_until_done("job-1")
    assert job.status == JobStatus.PARTIALLY_SUCCEEDED
    assert job.error_details == ["resource X not licensed"]


def test_failed_job_raises_with_details() -> None:
    client = _FakeClient(["running", "failed"])
    with pytest.raises(ExportJobError) as exc:
        _driver(client).wait_until_done("job-1")
    assert "resource X not licensed" in str(exc.value)
    assert not isinstance(exc.value, ExportJobTimeout)


def test_wait_times_out_within_bound() -> None:
    client = _FakeClient(["running"])
    driver = _driver(client, poll_interval=0.02, timeout=0.1)
    start = time.monotonic()
    with pytest.raises(ExportJobTimeout):
        driver.wait_until_done("job-1")
    elapsed = time.monotonic() - start
    assert elapsed >= 0.1
    assert elapsed < 0.1 + 0.02 + 0.5


def test_wait_timeout_with_injected_clock() -> None:
    now = [0.0]

    def clock():
        now[0] += 4.0
        return now[0]

    client = _FakeClient(["running"])
    with pytest.raises(ExportJobTimeout):
        _driver(client, timeout=10.0, clock=clock).wait_until_done("job-1")
    # deadline = 4 + 10; checks at 8, 12, 16
    assert len(client.gets) == 3


def test_wait_is_cancelled_promptly() -> None:
    client = _FakeClient(["running"])
    cancel = threading.Event()
    driver = _driver(client, poll_interval=30.0, timeout=600.0)

    timer = threading.Timer(0.05, cancel.set)
    timer.start()
    start = time.monotonic()
    with pytest.raises(CaptureCancelled):
        driver.wait_until_done("job-1", cancel=cancel)
    assert time.monotonic() - start < 5.0
    timer.join()


def test_download_requires_location() -> None:
    with pytest.raises(ExportFormatError):
        _driver(_FakeClient(["running"])).download("")


def test_download_classifies_non_json_result_as_format_error() -> None:
    class _HtmlClient(_FakeClient):
        def get_json(self, url):
            if url == LOCATION:
                try:
                    raise ValueError("Expecting value")
                except ValueError as e:
                    raise TransportError(f"Response from {url} is not valid JSON", status_code=200) from e
            return super().get_json(url)

    with pytest.raises(ExportFormatError, match="not valid JSON"):
        _driver(_HtmlClient(["succeeded"])).download(LOCATION)


def test_download_keeps_http_errors_as_transport_errors() -> None:
    class _DeniedClient(_FakeClient):
        def get_json(self, url):
            raise TransportError("Graph returned 403", status_code=403)

    with pytest.raises(TransportError) as exc:
        _driver(_DeniedClient(["succeeded"])).download(LOCATION)
    assert not isinstance(exc.value, ExportFormatError)


def test_delete_is_best_effort() -> None:
    client = _FakeClient(["running"], fail_delete=True)
    assert _driver(client).delete("job-1") is False
    assert client.deletes == [job_url("job-1")]


def test_run_deletes_job_after_success() -> None:
    payload = {"resources": [{"resourceType": "microsoft.intune.deviceCategory", "instances": [{"DisplayName": "A"}]}]}
    client = _FakeClient(["running", "succeeded"], payload=payload)
    result = _driver(client).run(["microsoft.intune.deviceCategory"], "label")
    assert result.instance_count == 1
    assert client.deletes == [job_url("job-1")]


def test_run_deletes_job_after_failure() -> None:
    client = _FakeClient(["failed"])
    with pytest.raises(ExportJobError):
        _driver(client).run(["x"], "label")
    assert client.deletes == [job_url("job-1")]


def test_run_deletes_job_after_unparsable_download() -> None:
    client = _FakeClient(["succeeded"], payload={"unexpected": "shape"})
    with pytest.raises(ExportFormatError):
        _driver(client).run(["x"], "label")
    assert client.deletes == [job_url("job-1")]


def test_run_leaves_job_when_cancelled() -> None:
    client = _FakeClient(["running"])
    cancel = threading.Event()

    def on_progress(status):
        cancel.set()

    with pytest.raises(CaptureCancelled):
        _driver(client, poll_interval=10.0).run(["x"], "label", on_progress=on_progress, cancel=cancel)
    assert client.deletes == []
