"""Typer CLI entrypoint for formmap."""

from __future__ import annotations

import hashlib
import json
from datetime import date
from pathlib import Path
from typing import Annotated, Any, Literal, cast

import typer
import yaml  # type: ignore[import-untyped]

from apps.cli.format_human import render_session_summary
from apps.cli.io import (
    OutputPaths,
    build_output_paths,
    existing_output_files,
    load_json_list,
    load_review_items,
    write_error_record_atomic,
    write_session_record_atomic,
)
from formmap.policy.loader import load_policy
from formmap.session.manager import SessionManager
from formmap.session.models import ManualEdit
from formmap.session.rendering import JsonFileRenderer
from formmap.utils.errors import SchemaError

app = typer.Typer(help="Spoken-answer form mapping CLI", rich_markup_mode=None)
ReportMode = Literal["human", "json"]


@app.callback()
def cli_callback() -> None:
    """CLI root callback to keep `formmap map` as explicit command form."""


@app.command("map")
def map_command(
    entities: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
    fields: Annotated[Path, typer.Option(..., exists=True, dir_okay=False, file_okay=True)],
    out_dir: Annotated[Path, typer.Option()] = Path("."),
    policy: Annotated[Path | None, typer.Option()] = None,
    reference_date: Annotated[
        str | None,
        typer.Option(help="Reference date (YYYY-MM-DD) for relative spoken dates."),
    ] = None,
    edits: Annotated[
        Path | None,
        typer.Option(
            exists=True,
            dir_okay=False,
            file_okay=True,
            help="JSON list of manual edits and clarification answers, applied in order.",
        ),
    ] = None,
    confirm: Annotated[
        bool,
        typer.Option("--confirm", help="Confirm and write out.filled_form.json when ready."),
    ] = False,
    report: Annotated[str, typer.Option()] = "human",
    no_overwrite: Annotated[
        bool,
        typer.Option("--no-overwrite", help="Fail when outputs already exist."),
    ] = False,
) -> None:
    """Map extracted entities onto form fields and write the session record."""

    paths = build_output_paths(out_dir)

    normalized_report = report.lower().strip()
    if normalized_report not in {"human", "json"}:
        typer.echo("ERROR: --report must be one of: human, json.")
        raise typer.Exit(code=1)
    report_typed = cast(ReportMode, normalized_report)

    reference: date | None = None
    if reference_date is not None:
        try:
            reference = date.fromisoformat(reference_date.strip())
        except ValueError:
            typer.echo("ERROR: --reference-date must be YYYY-MM-DD.")
            raise typer.Exit(code=1) from None

    existing = existing_output_files(paths)
    if existing and no_overwrite:
        typer.echo("ERROR: outputs already exist and --no-overwrite is enabled.")
        raise typer.Exit(code=1)
    if existing:
        names = ", ".join(path.name for path in existing)
        typer.echo(f"INFO: overwriting existing outputs: {names}")
        paths.filled_form.unlink(missing_ok=True)

    manager: SessionManager | None = None
    session_id: str | None = None
    exit_code = 1
    failure_stage = "unknown"

    try:
        failure_stage = "load_policy"
        policy_model = load_policy(policy)
        failure_stage = "load_inputs"
        field_items = load_json_list(fields, "fields")
        entity_items = load_json_list(entities, "entities")
        review_items = load_review_items(edits) if edits is not None else []

        failure_stage = "start_session"
        manager = SessionManager(
            policy_model,
            renderer=JsonFileRenderer(paths.filled_form),
            id_factory=lambda: _session_id_for(entity_items, field_items),
        )
        session_id = manager.start_session(entity_items, field_items, reference_time=reference)

        failure_stage = "review"
        for item in review_items:
            if isinstance(item, ManualEdit):
                manager.apply_edit(session_id, item.field_id, item.value)
            else:
                manager.resolve_clarification(session_id, item.clarification_id, item.choice)

        exit_code = 0
        if confirm:
            failure_stage = "confirm"
            result = manager.confirm(session_id)
            if not result.ok:
                exit_code = 2
                typer.echo(f"ERROR: confirmation blocked: {result.blocked_reason}")
            else:
                failure_stage = "finalize"
                finalized = manager.finalize(session_id)
                if not finalized.ok:
                    exit_code = 1
                    typer.echo(f"ERROR: finalize failed (retryable): {finalized.error}")
                else:
                    typer.echo(f"INFO: wrote filled form to {finalized.output}")

        snapshot = manager.get_state(session_id)
        if exit_code == 0 and snapshot.state not in {"awaiting_confirmation", "finalized"}:
            exit_code = 2

        if report_typed == "human":
            command_base = _command_base(entities, fields)
            typer.echo(render_session_summary(snapshot, command_base=command_base))
        else:
            typer.echo(snapshot.model_dump_json(indent=2))

    except SchemaError as exc:
        exit_code = 3
        typer.echo(f"ERROR: schema error: {exc}")
        _safe_write_error_record(
            paths,
            error_type=type(exc).__name__,
            error_message=str(exc),
            stage=failure_stage,
            problems=exc.problems,
        )
    except Exception as exc:  # noqa: BLE001
        exit_code = 1
        typer.echo(f"ERROR: {type(exc).__name__}: {exc}")
        if manager is None or session_id is None:
            _safe_write_error_record(
                paths,
                error_type=type(exc).__name__,
                error_message=str(exc),
                stage=failure_stage,
            )

    if manager is not None and session_id is not None:
        try:
            write_session_record_atomic(paths, manager.export_record(session_id))
        except Exception as exc:  # noqa: BLE001
            exit_code = 1
            typer.echo(f"ERROR: write session record failed: {exc}")

    if exit_code == 0:
        typer.echo("INFO: success")
    elif exit_code == 2:
        typer.echo("WARNING: outstanding items remain")

    raise typer.Exit(code=exit_code)


@app.command("policy")
def policy_command(
    policy: Annotated[Path | None, typer.Option()] = None,
) -> None:
    """Print the effective mapping policy as YAML."""

    try:
        policy_model = load_policy(policy)
    except ValueError as exc:
        typer.echo(f"ERROR: {exc}")
        raise typer.Exit(code=1) from None

    typer.echo(
        yaml.safe_dump(
            policy_model.model_dump(mode="json"), allow_unicode=True, sort_keys=False
        ).rstrip()
    )


def _session_id_for(entity_items: list[dict[str, Any]], field_items: list[dict[str, Any]]) -> str:
    digest = hashlib.sha256(
        json.dumps(
            {"entities": entity_items, "fields": field_items},
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")
    ).hexdigest()
    return f"map-{digest[:12]}"


def _command_base(entities: Path, fields: Path) -> str:
    return f"formmap map --entities {entities} --fields {fields}"


def _safe_write_error_record(
    paths: OutputPaths,
    *,
    error_type: str,
    error_message: str,
    stage: str,
    problems: list[dict[str, Any]] | None = None,
) -> None:
    try:
        write_error_record_atomic(
            paths,
            error_type=error_type,
            error_message=error_message,
            stage=stage,
            problems=problems,
        )
    except Exception as exc:  # noqa: BLE001
        typer.echo(f"ERROR: write error record failed: {exc}")


def main() -> None:
    """Console script entrypoint."""

    app()


if __name__ == "__main__":
    main()
