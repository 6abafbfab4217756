"""CLI entry point for assessment-orchestrator."""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional

import click

from assessment_orchestrator import __version__
from assessment_orchestrator.app import Application
from assessment_orchestrator.config.settings import (
    OrchestratorConfig,
    get_env_token,
    load_config,
)
from assessment_orchestrator.errors import AssessmentError, DuplicateSubmission, ErrorKind
from assessment_orchestrator.submission.answers import JOB_ID_KEY
from assessment_orchestrator.utils.logging import configure_logging, get_logger
from assessment_orchestrator.utils.result import ExitCode
from assessment_orchestrator.workflow.states import WorkflowState, WorkflowStatus

# Default paths
DEFAULT_CONFIG = "./config"


class Context:
    """CLI context for sharing state between commands."""

    def __init__(
        self,
        config_dir: Path,
        state_dir: Optional[Path],
        api_url: Optional[str],
        log_level: str,
        log_format: str,
    ) -> None:
        self.config_dir = config_dir
        self.state_dir = state_dir
        self.api_url = api_url
        self.log_level = log_level
        self.log_format = log_format
        self.logger = get_logger("cli")

    def load_config(self) -> OrchestratorConfig:
        """Load and validate configuration, exiting on error."""
        result = load_config(self.config_dir)
        if result.is_err():
            error = result.unwrap_err()
            self.logger.error("config_invalid", field=error.field, message=error.message)
            output_json({
                "status": "error",
                "message": f"Invalid configuration: {error.field}: {error.message}",
            })
            sys.exit(ExitCode.CONFIG_INVALID)

        return result.unwrap().with_overrides(
            base_url=self.api_url,
            state_dir=self.state_dir,
        )

    def require_token(self) -> None:
        if not get_env_token():
            output_json({
                "status": "error",
                "message": "No credential found. Set ASSESSMENT_API_TOKEN.",
            })
            sys.exit(ExitCode.CREDENTIAL_MISSING)


pass_context = click.make_pass_decorator(Context)


def output_json(data: dict) -> None:
    """Output JSON to stdout."""
    click.echo(json.dumps(data, indent=2, default=str))


def output_line(data: dict) -> None:
    """Output one compact JSON line to stdout."""
    click.echo(json.dumps(data, default=str))


def read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}") from e


def exit_code_for(state: WorkflowState) -> int:
    """Map a terminal workflow state onto a process exit code."""
    if state.status is WorkflowStatus.COMPLETED:
        return ExitCode.SUCCESS
    if state.status is WorkflowStatus.CANCELLED:
        return ExitCode.JOB_CANCELLED
    if state.status is WorkflowStatus.FAILED:
        if state.job_id is None:
            return ExitCode.SUBMISSION_FAILED
        if state.error is not None and state.error.kind == ErrorKind.NOT_FOUND.value:
            return ExitCode.RESULT_UNAVAILABLE
        return ExitCode.JOB_FAILED
    return ExitCode.GENERAL_ERROR


@click.group()
@click.option(
    "--config",
    type=click.Path(exists=False, path_type=Path),
    default=DEFAULT_CONFIG,
    help="Path to config directory",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for the persistent store (in-memory if omitted)",
)
@click.option(
    "--api-url",
    default=None,
    help="Override the API base URL",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warn", "error"], case_sensitive=False),
    default="info",
    help="Logging level",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"], case_sensitive=False),
    default="json",
    help="Log format",
)
@click.version_option(version=__version__)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path,
    state_dir: Optional[Path],
    api_url: Optional[str],
    log_level: str,
    log_format: str,
) -> None:
    """
    Assessment Orchestrator - submit talent-mapping assessments and follow
    them to a result.

    Submits scored answer sheets to the assessment service, then watches
    the analysis job over the realtime channel with status polling as a
    fallback, and fetches the final result document.
    """
    configure_logging(level=log_level, format_type=log_format)

    ctx.obj = Context(
        config_dir=config,
        state_dir=state_dir,
        api_url=api_url,
        log_level=log_level,
        log_format=log_format,
    )


@cli.command()
@click.argument("answers_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--scores",
    "scores_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON file with riasec, ocean and viaIs score maps",
)
@click.option("--name", default=None, help="Assessment name sent with the submission")
@click.option(
    "--no-socket",
    is_flag=True,
    default=False,
    help="Use status polling only",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Overall budget in seconds",
)
@pass_context
def submit(
    ctx: Context,
    answers_file: Path,
    scores_file: Path,
    name: Optional[str],
    no_socket: bool,
    timeout: Optional[float],
) -> None:
    """Submit an answer sheet and stream workflow states as JSON lines."""
    ctx.require_token()

    answers = read_json(answers_file)
    scores = read_json(scores_file)
    if not isinstance(answers, dict) or not isinstance(scores, dict):
        raise click.BadParameter("Answers and scores files must contain JSON objects")

    config = ctx.load_config().with_overrides(
        socket_enabled=False if no_socket else None,
        overall_timeout=timeout,
    )
    if name:
        config.assessment = replace(config.assessment, name=name)

    ctx.logger.info(
        "submit_started",
        answers=len(answers),
        socket_enabled=config.socket.enabled,
    )

    async def _run() -> WorkflowState:
        async with Application(config) as app:
            machine = app.workflow(scorer=lambda _answers: scores)
            machine.subscribe(lambda state: output_line(state.to_dict()))
            try:
                return await machine.submit(answers)
            finally:
                await machine.aclose()

    try:
        state = asyncio.run(_run())
    except DuplicateSubmission as e:
        output_line({"status": "error", "error": e.to_dict()})
        sys.exit(ExitCode.SUBMISSION_FAILED)

    sys.exit(exit_code_for(state))


@cli.command()
@click.argument("job_id", required=False)
@click.option(
    "--no-socket",
    is_flag=True,
    default=False,
    help="Use status polling only",
)
@pass_context
def watch(ctx: Context, job_id: Optional[str], no_socket: bool) -> None:
    """
    Follow an accepted job to its result.

    Without JOB_ID, resumes the job recorded in the persistent store.
    """
    ctx.require_token()
    config = ctx.load_config().with_overrides(socket_enabled=False if no_socket else None)

    async def _run() -> Optional[WorkflowState]:
        async with Application(config) as app:
            target = job_id or app.store.get(JOB_ID_KEY)
            if not target:
                return None
            machine = app.workflow()
            machine.subscribe(lambda state: output_line(state.to_dict()))
            try:
                return await machine.resume(str(target))
            finally:
                await machine.aclose()

    state = asyncio.run(_run())
    if state is None:
        output_json({"status": "error", "message": "No job to watch."})
        sys.exit(ExitCode.GENERAL_ERROR)

    sys.exit(exit_code_for(state))


@cli.command()
@click.argument("job_id")
@pass_context
def status(ctx: Context, job_id: str) -> None:
    """Show the current status of a job."""
    ctx.require_token()
    config = ctx.load_config()

    async def _run() -> dict:
        async with Application(config) as app:
            job = await app.api.get_status(job_id)
            return job.to_dict()

    try:
        output_json(asyncio.run(_run()))
    except AssessmentError as e:
        ctx.logger.error("status_failed", job_id=job_id, error=e.kind.value)
        output_json({"status": "error", "error": e.to_dict()})
        sys.exit(ExitCode.GENERAL_ERROR)


@cli.command()
@click.argument("result_id")
@pass_context
def result(ctx: Context, result_id: str) -> None:
    """Fetch a result document, falling back to the archive."""
    ctx.require_token()
    config = ctx.load_config()

    async def _run() -> dict:
        async with Application(config) as app:
            document = await app.fetcher.fetch(result_id)
            return document.to_dict()

    try:
        output_json(asyncio.run(_run()))
    except AssessmentError as e:
        ctx.logger.error("result_failed", result_id=result_id, error=e.kind.value)
        output_json({"status": "error", "error": e.to_dict()})
        sys.exit(
            ExitCode.RESULT_UNAVAILABLE
            if e.kind is ErrorKind.NOT_FOUND
            else ExitCode.GENERAL_ERROR
        )


@cli.command()
@pass_context
def health(ctx: Context) -> None:
    """Check the assessment service health endpoint."""
    config = ctx.load_config()

    async def _run() -> dict:
        async with Application(config) as app:
            return await app.api.check_health()

    body = asyncio.run(_run())
    output_json(body)
    if body.get("status") == "unhealthy":
        sys.exit(ExitCode.GENERAL_ERROR)


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except Exception as e:
        logger = get_logger("cli")
        logger.error("cli_error", error=str(e))
        sys.exit(2)


if __name__ == "__main__":
    main()
