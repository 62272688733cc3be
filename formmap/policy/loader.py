"""Policy loading utilities for mapping thresholds and vocabularies."""

from __future__ import annotations

from pathlib import Path

import yaml  # type: ignore[import-untyped]
from pydantic import ValidationError

from formmap.policy.models import MappingPolicy


def load_policy(path: Path | None = None) -> MappingPolicy:
    """Load and validate mapping policy from YAML."""

    policy_path = path or Path(__file__).with_name("policy.yaml")

    try:
        raw = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValueError(f"Policy file not found: {policy_path}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in policy file: {policy_path}") from exc

    if not isinstance(raw, dict):
        raise ValueError(f"Policy file must contain a mapping: {policy_path}")

    normalized = _normalize_vocabulary(raw)

    try:
        return MappingPolicy.model_validate(normalized)
    except ValidationError as exc:
        raise ValueError(f"Invalid policy schema: {policy_path}") from exc


def _normalize_vocabulary(raw: dict[object, object]) -> dict[object, object]:
    normalized = dict(raw)
    synonyms = normalized.get("synonyms")
    if isinstance(synonyms, list):
        normalized["synonyms"] = [
            [str(word).strip().lower() for word in group] if isinstance(group, list) else group
            for group in synonyms
        ]
    stop_words = normalized.get("stop_words")
    if isinstance(stop_words, list):
        normalized["stop_words"] = [str(word).strip().lower() for word in stop_words]
    codes = normalized.get("phone_country_codes")
    if isinstance(codes, list):
        # YAML reads unquoted 91 as int
        normalized["phone_country_codes"] = [str(code).lstrip("+") for code in codes]
    return normalized
