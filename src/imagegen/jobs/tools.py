"""Named remote-procedure surface returning JSON-ready envelopes."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, model_validator

from imagegen.jobs.errors import ImageJobError, ValidationError
from imagegen.jobs.models import JobView
from imagegen.jobs.services import ALL_STATUSES, ImageJobService
from imagegen.jobs.waiter import WaitCoordinator, completed_result

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Mapping[str, Any]], dict[str, Any]]


class _Args(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CreateArgs(_Args):
    prompt: StrictStr = Field(description="Text description of the image (3-1000 characters).")
    model: StrictStr | None = Field(
        default=None,
        description=(
            "flux-schnell is fastest (default), sdxl-lightning is fast, "
            "sdxl-base is highest quality."
        ),
    )
    count: StrictInt = Field(default=1, description="How many images to generate (1-20).")


class GetStatusArgs(_Args):
    job_id: StrictStr = Field(description="Job id returned by generate_image.")


class ListJobsArgs(_Args):
    status: Literal["all", "pending", "processing", "completed", "failed"] = Field(
        default=ALL_STATUSES,
        description="Only list jobs in this status.",
    )
    limit: StrictInt | None = Field(default=None, description="Page size (1-50, default 10).")
    offset: StrictInt = Field(default=0, description="Rows to skip.")


class ListGenerationsArgs(_Args):
    limit: StrictInt | None = Field(default=None, description="Page size (1-50, default 10).")
    offset: StrictInt = Field(default=0, description="Rows to skip.")


class WaitArgs(_Args):
    job_id: StrictStr | None = Field(default=None, description="One job id to wait for.")
    job_ids: list[StrictStr] | None = Field(
        default=None,
        description="Up to 20 job ids to wait for together.",
    )

    @model_validator(mode="after")
    def _one_of_job_id_or_job_ids(self) -> WaitArgs:
        if (self.job_id is None) == (self.job_ids is None):
            raise ValueError("Provide exactly one of job_id or job_ids.")
        return self



TOOL_CATALOG: dict[str, tuple[str, type[_Args]]] = {
    "generate_image": (
        "Generate image(s) from a prompt. Returns immediately with job id(s) "
        "for asynchronous processing.",
        CreateArgs,
    ),
    "get_job_status": (
        "Status of one generation job, with the image URL once completed.",
        GetStatusArgs,
    ),
    "list_jobs": (
        "Jobs, most recent first, optionally filtered by status.",
        ListJobsArgs,
    ),
    "list_generations": (
        "Completed generations, most recent first.",
        ListGenerationsArgs,
    ),
    "wait_for_completion": (
        "Block until the job(s) complete, any fails, or the scaled timeout passes.",
        WaitArgs,
    ),
    "generate_image_and_wait": (
        "Generate image(s) and wait for the results in one call.",
        CreateArgs,
    ),
}


class ToolRouter:
    """Dispatches tool calls by name; every outcome is a dict envelope.

    ``success`` is True on the happy path. Failures carry ``error`` and
    ``error_type`` and never propagate as exceptions.
    """

    def __init__(self, *, service: ImageJobService, waiter: WaitCoordinator) -> None:
        self.service = service
        self.waiter = waiter
        self._handlers: dict[str, ToolHandler] = {
            "generate_image": self._create,
            "get_job_status": self._get_status,
            "list_jobs": self._list_jobs,
            "list_generations": self._list_generations,
            "wait_for_completion": self._wait,
            "generate_image_and_wait": self._create_and_wait,
        }
        self._aliases = {
            "create": "generate_image",
            "getStatus": "get_job_status",
            "list": "list_jobs",
            "wait": "wait_for_completion",
            "createAndWait": "generate_image_and_wait",
        }

    @property
    def tool_names(self) -> list[str]:
        return [*self._handlers, *self._aliases]

    def describe_tools(self) -> list[dict[str, Any]]:
        """Catalog entries with a description and a JSON schema for the arguments."""

        aliases: dict[str, list[str]] = {}
        for alias, target in self._aliases.items():
            aliases.setdefault(target, []).append(alias)
        return [
            {
                "name": name,
                "aliases": aliases.get(name, []),
                "description": description,
                "input_schema": args_model.model_json_schema(),
            }
            for name, (description, args_model) in TOOL_CATALOG.items()
        ]

    def call(self, name: str, arguments: Mapping[str, Any] | None = None) -> dict[str, Any]:
        handler = self._handlers.get(self._aliases.get(name, name))
        if handler is None:
            return ValidationError(
                f"Unknown tool: {name}",
                details={"available_tools": self.tool_names},
            ).to_envelope()
        try:
            return handler(arguments or {})
        except ImageJobError as error:
            logger.info("Tool %s failed: %s", name, error.message)
            return error.to_envelope()
        except pydantic.ValidationError as error:
            return _validation_envelope(error)
        except Exception as error:  # noqa: BLE001
            logger.exception("Tool %s raised an unexpected error", name)
            return {
                "success": False,
                "error": str(error) or error.__class__.__name__,
                "error_type": "internal_error",
            }

    def _create(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        args = CreateArgs.model_validate(arguments)
        jobs = self.service.create_jobs(prompt=args.prompt, model=args.model, count=args.count)
        return self._creation_envelope(jobs)

    def _get_status(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        args = GetStatusArgs.model_validate(arguments)
        job = self.service.get_job(job_id=args.job_id)
        return {
            "success": True,
            "job_id": job.job_id,
            "status": job.status.value,
            "image_url": job.image_url,
            "error": job.error,
            "prompt": job.prompt,
            "model": job.model.value,
            "created_at": job.created_at.isoformat(),
            "updated_at": job.updated_at.isoformat(),
        }

    def _list_jobs(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        args = ListJobsArgs.model_validate(arguments)
        page = self.service.list_jobs(status=args.status, limit=args.limit, offset=args.offset)
        return {
            "success": True,
            "filter": args.status,
            "total_count": page.total_count,
            "returned_count": page.returned_count,
            "has_more": page.has_more,
            "limit": page.limit,
            "offset": page.offset,
            "jobs": [job.to_dict() for job in page.items],
        }

    def _list_generations(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        args = ListGenerationsArgs.model_validate(arguments)
        page = self.service.list_generations(limit=args.limit, offset=args.offset)
        return {
            "success": True,
            "total_count": page.total_count,
            "returned_count": page.returned_count,
            "has_more": page.has_more,
            "limit": page.limit,
            "offset": page.offset,
            "generations": [generation.to_dict() for generation in page.items],
        }

    def _wait(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        args = WaitArgs.model_validate(arguments)
        if args.job_id is not None:
            return self._wait_envelope(self.waiter.wait(args.job_id), single=True)
        return self._wait_envelope(self.waiter.wait(args.job_ids or []), single=False)

    def _create_and_wait(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        args = CreateArgs.model_validate(arguments)
        jobs = self.service.create_jobs(prompt=args.prompt, model=args.model, count=args.count)
        job_ids = [job.job_id for job in jobs]
        if args.count > 1:
            return self._wait_envelope(self.waiter.wait(job_ids), single=False)
        return self._wait_envelope(self.waiter.wait(job_ids[0]), single=True)

    def _creation_envelope(self, jobs: list[JobView]) -> dict[str, Any]:
        first = jobs[0]
        common = {
            "status": first.status.value,
            "prompt": first.prompt,
            "model": first.model.value,
            "estimated_time_seconds": self.service.settings.estimated_time_seconds,
        }
        if len(jobs) == 1:
            return {
                "success": True,
                "job_id": first.job_id,
                "message": "Image generation started. Use get_job_status to check progress.",
                **common,
            }
        return {
            "success": True,
            "job_ids": [job.job_id for job in jobs],
            "count": len(jobs),
            "message": (
                f"{len(jobs)} image generation jobs started. "
                "Use wait_for_completion with job_ids array to wait for all."
            ),
            **common,
        }

    @staticmethod
    def _wait_envelope(jobs: list[JobView], *, single: bool) -> dict[str, Any]:
        if single:
            return {"success": True, "status": "completed", **completed_result(jobs[0])}
        return {
            "success": True,
            "count": len(jobs),
            "results": [completed_result(job) for job in jobs],
        }


def _validation_envelope(error: pydantic.ValidationError) -> dict[str, Any]:
    issues = error.errors(include_url=False, include_context=False, include_input=False)
    message = "; ".join(
        f"{'.'.join(str(part) for part in issue['loc']) or 'arguments'}: {issue['msg']}"
        for issue in issues
    )
    return ValidationError(
        f"Invalid arguments: {message}",
        details={"issues": [{"loc": list(issue["loc"]), "msg": issue["msg"]} for issue in issues]},
    ).to_envelope()
