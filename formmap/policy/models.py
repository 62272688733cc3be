"""Data models for the mapping policy."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ScoreWeights(BaseModel):
    """Weights of the three scoring signals."""

    model_config = ConfigDict(extra="forbid")

    type: float = Field(ge=0.0)
    label: float = Field(ge=0.0)
    context: float = Field(ge=0.0)

    @model_validator(mode="after")
    def _check_positive_total(self) -> ScoreWeights:
        if self.type + self.label + self.context <= 0:
            raise ValueError("score weights must not all be zero")
        return self


class MappingPolicy(BaseModel):
    """Tunable mapping policy loaded from YAML.

    Rules:
    - confident_threshold >= minimum_consideration
    - every synonym group has at least two words
    - the type hierarchy must not contain cycles
    """

    model_config = ConfigDict(extra="forbid")

    confident_threshold: float = Field(ge=0.0, le=1.0)
    ambiguity_margin: float = Field(ge=0.0, le=1.0)
    minimum_consideration: float = Field(ge=0.0, le=1.0)
    low_confidence_threshold: float = Field(ge=0.0, le=1.0)
    weights: ScoreWeights
    supertype_credit: float = Field(gt=0.0, le=1.0)
    synonym_credit: float = Field(ge=0.0, le=1.0)
    fuzzy_credit: float = Field(ge=0.0, le=1.0)
    fuzzy_min_ratio: int = Field(ge=0, le=100)
    type_parents: dict[str, str] = Field(default_factory=dict)
    synonyms: list[list[str]] = Field(default_factory=list)
    stop_words: list[str] = Field(default_factory=list)
    phone_country_codes: list[str] = Field(default_factory=list)
    age_min: int = 0
    age_max: int = 130
    two_digit_year_pivot: int = Field(ge=0, le=99)
    lock_timeout_seconds: float = Field(default=0.0, ge=0.0)

    @model_validator(mode="after")
    def _check_consistency(self) -> MappingPolicy:
        if self.confident_threshold < self.minimum_consideration:
            raise ValueError("confident_threshold must be >= minimum_consideration")
        if self.age_min > self.age_max:
            raise ValueError("age_min must be <= age_max")
        for group in self.synonyms:
            if len(group) < 2:
                raise ValueError("synonym groups need at least two words")
        for start in self.type_parents:
            seen = {start}
            current = self.type_parents.get(start)
            while current is not None:
                if current in seen:
                    raise ValueError(f"type hierarchy cycle at '{start}'")
                seen.add(current)
                current = self.type_parents.get(current)
        return self

    def ancestors(self, type_name: str) -> list[str]:
        """Return ancestors of ``type_name`` from nearest to root."""

        chain: list[str] = []
        current = self.type_parents.get(type_name)
        while current is not None:
            chain.append(current)
            current = self.type_parents.get(current)
        return chain
