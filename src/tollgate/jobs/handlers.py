"""
Job Handlers

Handlers are async callables keyed by job type. They receive the claimed job
and a context with shared services, and return the result to store plus an
optional artifact to upload.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..persistence.models import JobRecord
from ..providers.router import ProviderRouter


@dataclass
class Artifact:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class JobOutcome:
    result: Any
    artifact: Optional[Artifact] = None


@dataclass
class HandlerContext:
    """Services a handler may use."""
    router: Optional[ProviderRouter] = None


JobHandler = Callable[[JobRecord, HandlerContext], Awaitable[JobOutcome]]

_HANDLERS: Dict[str, JobHandler] = {}


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    """Decorator registering a handler for a job type."""
    def decorator(fn: JobHandler) -> JobHandler:
        _HANDLERS[job_type] = fn
        return fn
    return decorator


def get_handler(job_type: str) -> Optional[JobHandler]:
    return _HANDLERS.get(job_type)


def registered_types() -> List[str]:
    return sorted(_HANDLERS)


SPEC_HEAD_CHARS = 200


@register_handler("sketch_to_app")
async def sketch_to_app(job: JobRecord, context: HandlerContext) -> JobOutcome:
    """Turn a free-form app description into a starter scaffold."""
    # Uploaded sketches carry a prompt and the stored file key instead of a spec
    spec = str(job.payload.get("spec") or job.payload.get("prompt") or "")
    head = spec[:SPEC_HEAD_CHARS]
    readme = (
        "# Generated App\n"
        "This is an initial scaffold derived from your sketch.\n"
        "\n"
        "Spec (head):\n"
        f"{head}\n"
    )
    result = {
        "summary": "Sketch-to-app prototype created.",
        "spec_head": head,
        "files": [{"path": "README.md", "contents": readme}],
    }
    if job.payload.get("r2_key"):
        result["source_key"] = job.payload["r2_key"]
    return JobOutcome(
        result=result,
        artifact=Artifact("README.md", readme.encode("utf-8"), "text/markdown; charset=utf-8"),
    )
