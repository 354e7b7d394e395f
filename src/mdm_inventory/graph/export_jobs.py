from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..logging import StepTimers, get_logger, log_event
from ..normalize.schema import ExportResult, ResourceGroup
from ..util.errors import (
    CaptureCancelled,
    ExportFormatError,
    ExportJobError,
    ExportJobTimeout,
    TransportError,
)
from .client import GraphClient, graph_url

LOG = get_logger(__name__)

EXPORT_BASE_URL = graph_url("admin/configurationManagement", beta=True)
CREATE_SNAPSHOT_URL = f"{EXPORT_BASE_URL}/configurationSnapshots/createSnapshot"
DEFAULT_POLL_INTERVAL_S = 5.0
DEFAULT_EXPORT_TIMEOUT_S = 600.0

_LABEL_INVALID = re.compile(r"[^A-Za-z0-9 ]")
_RESERVED_PAYLOAD_KEYS = ("resources", "value")


class JobStatus(str, Enum):
    NOT_STARTED = "not-started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_SUCCEEDED = "partially-succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.PARTIALLY_SUCCEEDED, JobStatus.FAILED)


_WIRE_STATUS: Dict[str, JobStatus] = {
    "notStarted": JobStatus.NOT_STARTED,
    "running": JobStatus.RUNNING,
    "succeeded": JobStatus.SUCCEEDED,
    "partiallySuccessful": JobStatus.PARTIALLY_SUCCEEDED,
    "failed": JobStatus.FAILED,
}


@dataclass(frozen=True)
class ExportJob:
    id: str
    status: JobStatus
    raw_status: str = ""
    resources: List[str] = field(default_factory=list)
    location: str = ""
    error_details: List[str] = field(default_factory=list)


def sanitize_label(label: str) -> str:
    """
    Keep letters, digits and single spaces; the export service rejects anything else.
    """
    return " ".join(_LABEL_INVALID.sub(" ", label).split())


def job_url(job_id: str) -> str:
    return f"{EXPORT_BASE_URL}/configurationSnapshotJobs/{job_id}"


def parse_job(body: Any) -> ExportJob:
    if not isinstance(body, dict):
        raise ExportJobError("Export job response is not an object")
    job_id = body.get("id")
    if not isinstance(job_id, str) or not job_id:
        raise ExportJobError("Export job response has no id")
    raw_status = body.get("status") if isinstance(body.get("status"), str) else ""
    status = _WIRE_STATUS.get(raw_status)
    if status is None:
        LOG.warning("Unknown export job status; treating as running", extra={"job_id": job_id, "status": raw_status})
        status = JobStatus.RUNNING
    resources = [r for r in body.get("resources") or [] if isinstance(r, str)]
    details = [d for d in body.get("errorDetails") or [] if isinstance(d, str)]
    location = body.get("resourceLocation")
    return ExportJob(
        id=job_id,
        status=status,
        raw_status=raw_status,
        resources=resources,
        # Only meaningful once the job has succeeded.
        location=location if isinstance(location, str) and status != JobStatus.FAILED else "",
        error_details=details,
    )


def _groups_from_list(items: Any) -> List[ResourceGroup]:
    groups: List[ResourceGroup] = []
    if not isinstance(items, list):
        return groups
    for item in items:
        if not isinstance(item, dict):
            continue
        rtype = item.get("resourceType")
        if not isinstance(rtype, str) or not rtype:
            continue
        instances = item.get("instances")
        groups.append(
            ResourceGroup(
                resource_type=rtype,
                instances=[i for i in instances if isinstance(i, dict)] if isinstance(instances, list) else [],
            )
        )
    return groups


def _parse_structured(payload: Any) -> List[ResourceGroup]:
    if isinstance(payload, dict):
        return _groups_from_list(payload.get("resources"))
    return _groups_from_list(payload)


def _parse_type_map(payload: Any) -> List[ResourceGroup]:
    if not isinstance(payload, dict):
        return []
    groups: List[ResourceGroup] = []
    for key, value in payload.items():
        if key in _RESERVED_PAYLOAD_KEYS or key.startswith("@") or not isinstance(value, list):
            continue
        groups.append(ResourceGroup(resource_type=key, instances=[i for i in value if isinstance(i, dict)]))
    return groups


def _parse_collection(payload: Any) -> List[ResourceGroup]:
    if not isinstance(payload, dict) or not isinstance(payload.get("value"), list):
        return []
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for item in payload["value"]:
        if not isinstance(item, dict):
            continue
        rtype = item.get("resourceType")
        if not isinstance(rtype, str) or not rtype:
            rtype = item.get("@odata.type")
        if not isinstance(rtype, str) or not rtype:
            rtype = "unknown"
        grouped.setdefault(rtype, []).append(item)
    return [ResourceGroup(resource_type=k, instances=v) for k, v in grouped.items()]


PARSE_STRATEGIES: Sequence[Callable[[Any], List[ResourceGroup]]] = (
    _parse_structured,
    _parse_type_map,
    _parse_collection,
)


def parse_export_payload(payload: Any) -> ExportResult:
    """
    Interpret a downloaded export payload. Strategies are tried in order and the
    first one yielding at least one resource group wins.
    """
    for strategy in PARSE_STRATEGIES:
        groups = strategy(payload)
        if groups:
            return ExportResult(groups=groups)
    raise ExportFormatError(f"Unrecognised export payload ({type(payload).__name__})")


class ExportJobDriver:
    """
    Drives one bulk configuration export: create, poll to a terminal state,
    download and delete. One driver instance handles one job at a time.
    """

    def __init__(
        self,
        client: GraphClient,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_S,
        timeout: float = DEFAULT_EXPORT_TIMEOUT_S,
        clock: Callable[[], float] = time.monotonic,
        tenant: str = "",
    ) -> None:
        self.client = client
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.clock = clock
        self.tenant = tenant

    def create(self, resources: Sequence[str], label: str) -> ExportJob:
        clean = sanitize_label(label)
        body = {
            "displayName": clean,
            "description": f"Policy snapshot: {clean}",
            "resources": list(resources),
        }
        try:
            job = parse_job(self.client.post_json(CREATE_SNAPSHOT_URL, body))
        except TransportError as e:
            raise ExportJobError(f"Failed to create export job: {e}") from e
        LOG.info(
            "Export job created",
            extra={"tenant": self.tenant, "job_id": job.id, "status": job.raw_status, "resources": len(job.resources)},
        )
        return job

    def poll(self, job_id: str) -> ExportJob:
        return parse_job(self.client.get_json(job_url(job_id)))

    def wait_until_done(
        self,
        job_id: str,
        on_progress: Optional[Callable[[str], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ExportJob:
        waiter = cancel or threading.Event()
        deadline = self.clock() + self.timeout
        while True:
            if waiter.is_set():
                raise CaptureCancelled(f"export job {job_id} wait cancelled")
            job = self.poll(job_id)
            if on_progress is not None:
                on_progress(job.status.value)

            if job.status in (JobStatus.SUCCEEDED, JobStatus.PARTIALLY_SUCCEEDED):
                if job.error_details:
                    LOG.warning(
                        "Export job finished with warnings",
                        extra={"tenant": self.tenant, "job_id": job_id, "details": job.error_details},
                    )
                return job
            if job.status == JobStatus.FAILED:
                msg = "export job failed"
                if job.error_details:
                    msg = f"{msg}: {'; '.join(job.error_details)}"
                raise ExportJobError(msg)

            if self.clock() >= deadline:
                raise ExportJobTimeout(f"export job {job_id} did not finish within {self.timeout:g}s")
            if waiter.wait(self.poll_interval):
                raise CaptureCancelled(f"export job {job_id} wait cancelled")

    def download(self, location: str) -> ExportResult:
        if not location:
            raise ExportFormatError("Export job finished without a result location")
        try:
            payload = self.client.get_json(location)
        except TransportError as e:
            if isinstance(e.__cause__, ValueError):
                raise ExportFormatError(f"Export result is not valid JSON: {e}") from e
            raise
        return parse_export_payload(payload)

    def delete(self, job_id: str) -> bool:
        try:
            self.client.delete(job_url(job_id))
        except Exception as e:
            LOG.warning(
                "Failed to delete export job",
                extra={"tenant": self.tenant, "job_id": job_id, "error": str(e)},
            )
            return False
        LOG.debug("Deleted export job", extra={"tenant": self.tenant, "job_id": job_id})
        return True

    def run(
        self,
        resources: Sequence[str],
        label: str,
        on_progress: Optional[Callable[[str], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ExportResult:
        timers = StepTimers()
        log_event(LOG, logging.INFO, "Starting export job", step="export_job", phase="start", timers=timers, tenant=self.tenant)
        job = self.create(resources, label)
        try:
            done = self.wait_until_done(job.id, on_progress=on_progress, cancel=cancel)
            result = self.download(done.location)
        except CaptureCancelled:
            # Left for the service to expire; no further calls once cancelled.
            log_event(LOG, logging.INFO, "Export job abandoned", step="export_job", phase="cancelled", timers=timers, tenant=self.tenant, job_id=job.id)
            raise
        except Exception:
            self.delete(job.id)
            log_event(LOG, logging.WARNING, "Export job did not produce a result", step="export_job", phase="error", timers=timers, tenant=self.tenant, job_id=job.id)
            raise
        self.delete(job.id)
        log_event(
            LOG,
            logging.INFO,
            "Export job complete",
            step="export_job",
            phase="complete",
            timers=timers,
            tenant=self.tenant,
            job_id=job.id,
            groups=len(result.groups),
            instances=result.instance_count,
        )
        return result
