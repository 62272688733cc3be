"""Human-readable session summary rendering for CLI output."""

from __future__ import annotations

from collections import Counter

from formmap.session.models import SessionSnapshot


def render_session_summary(snapshot: SessionSnapshot, *, command_base: str) -> str:
    """Render one-screen human-readable mapping summary."""

    completeness = snapshot.completeness
    lines: list[str] = []
    lines.append("mapping_summary:")
    lines.append(f"session_id={snapshot.session_id} state={snapshot.state}")
    lines.append(
        f"completeness={completeness.completeness_ratio:.2f} "
        f"required={completeness.required_filled}/{completeness.required_total}"
    )

    if snapshot.filled_fields:
        for item in snapshot.filled_fields:
            marker = "" if item.validated else " INVALID"
            lines.append(
                f"filled: {item.field_id}={item.value!r} "
                f"confidence={item.confidence:.2f} origin={item.origin}{marker}"
            )
    else:
        lines.append("filled: none")

    if snapshot.clarifications:
        for request in snapshot.clarifications:
            subject = (
                f"entity={request.subject_entity_id}"
                if request.subject_entity_id is not None
                else f"field={request.subject_field_id}"
            )
            options = (
                request.competing_field_ids
                if request.subject_entity_id is not None
                else request.competing_entity_ids
            )
            lines.append(
                f"clarification: {request.id} reason={request.reason} {subject} "
                f"options={','.join(options)}"
            )
    else:
        lines.append("clarifications: none")

    lines.append("unresolved_required: " + _join_or_none(completeness.unresolved_required))
    lines.append("low_confidence: " + _join_or_none(completeness.low_confidence_fields))
    lines.append("invalid_fields: " + _join_or_none(completeness.invalid_fields))

    reasons: Counter[str] = Counter(item.reason for item in snapshot.unmatched)
    if reasons:
        top_items = sorted(reasons.items(), key=lambda item: (-item[1], item[0]))
        lines.append("unmatched: " + ", ".join(f"{reason}={count}" for reason, count in top_items))
    else:
        lines.append("unmatched: none")

    lines.append("suggestion: " + _build_suggestion(snapshot))
    lines.append("next_cmd: " + _build_next_cmd(snapshot, command_base=command_base))
    return "\n".join(lines)


def _build_suggestion(snapshot: SessionSnapshot) -> str:
    if snapshot.state == "finalized":
        return "none"
    if snapshot.state == "awaiting_confirmation":
        return "all required fields resolved; review the values and confirm."
    if snapshot.clarifications:
        return (
            "answer each clarification in an edits file "
            '({"clarification_id": ..., "choice": ...}) or edit the named fields.'
        )
    if snapshot.completeness.unresolved_required:
        return (
            "fill the unresolved required fields with manual edits "
            '({"field_id": ..., "value": ...}).'
        )
    return "none"


def _build_next_cmd(snapshot: SessionSnapshot, *, command_base: str) -> str:
    if snapshot.state == "awaiting_confirmation":
        return f"{command_base} --confirm"
    if snapshot.clarifications or snapshot.completeness.unresolved_required:
        return f"{command_base} --edits edits.json"
    return "none"


def _join_or_none(items: list[str]) -> str:
    return ", ".join(items) if items else "none"
