"""
Submission path: validate, persist and enqueue a job.

Everything that can reject a job happens here, before anything is written:
dependency enforcement and compilation for MAGUS, parameter parsing for
XTree, and upload size limits. A job that would compile to zero steps is
never created.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from seqjobs.compiler import compile_workflow, require_steps
from seqjobs.config import ABSOLUTE_MAX_UPLOAD, UPLOAD_LIMITS
from seqjobs.dependencies import enforce_with_warnings
from seqjobs.errors import CompileError, SubmissionError
from seqjobs.schemas import DependencyWarning, Tool, WorkflowState, XTreeMode, XTreeParams
from seqjobs.store import JobStore

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    """
    Attributes:
        job_id: Id of the queued job
        warnings: Stages disabled by dependency enforcement
        steps: Step ids the job will run (MAGUS) or the XTree mode
    """
    job_id: str
    warnings: list[DependencyWarning] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)


def check_upload_size(tool: Tool, input_file: Path) -> None:
    """
    Raises:
        SubmissionError: If the file is larger than the tool's limit
    """
    size = input_file.stat().st_size
    limit = min(UPLOAD_LIMITS[tool], ABSOLUTE_MAX_UPLOAD)
    if size > limit:
        raise SubmissionError(
            f"File too large for {tool.display_name}: {size} bytes (limit {limit})"
        )


def submit_job(
    store: JobStore,
    tool: Tool,
    email: str,
    params: dict[str, Any],
    input_file: Path,
    mapping_file: Optional[Path] = None,
) -> SubmissionResult:
    """
    Validate and queue a job.

    Args:
        store: Job store to persist into
        tool: Tool to run
        email: Notification recipient
        params: MAGUS workflow state or XTree parameters
        input_file: Validated input sequence file
        mapping_file: Optional XTree BUILD mapping file

    Returns:
        SubmissionResult with the new job id

    Raises:
        CompileError: Empty workflow or unreadable parameters
        SubmissionError: Missing recipient, missing or oversized input
    """
    tool = Tool(tool)
    input_file = Path(input_file)
    if not email:
        raise SubmissionError("A notification email address is required")
    if not input_file.is_file():
        raise SubmissionError(f"Input file does not exist: {input_file}")
    check_upload_size(tool, input_file)

    warnings: list[DependencyWarning] = []
    mode: Optional[str] = None

    if tool == Tool.MAGUS:
        state, warnings = enforce_with_warnings(WorkflowState.from_dict(params))
        steps = [step.id for step in require_steps(compile_workflow(state))]
        stored_params = state.to_dict()
        mapping_file = None
    else:
        try:
            xtree_params = XTreeParams.from_dict(params)
        except ValueError as e:
            raise CompileError(f"Invalid XTree parameters: {e}") from e
        mode = xtree_params.mode.value
        steps = [mode]
        stored_params = xtree_params.to_dict()
        if xtree_params.mode != XTreeMode.BUILD:
            mapping_file = None
        elif mapping_file is not None and not Path(mapping_file).is_file():
            raise SubmissionError(f"Mapping file does not exist: {mapping_file}")

    for warning in warnings:
        logger.warning(
            f"Stage {warning.stage.value} disabled: {warning.message}",
            extra={"event": "stage_disabled"},
        )

    job_id = store.create_job(
        tool, email, stored_params, input_file, mode=mode, mapping_file=mapping_file
    )
    store.enqueue(job_id)
    logger.info(
        f"Queued {tool.value} job {job_id} ({len(steps)} step(s))",
        extra={"job_id": job_id, "event": "job_queued"},
    )
    return SubmissionResult(job_id=job_id, warnings=warnings, steps=steps)
