from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from . import rules


class FunctionalDependency(BaseModel):
    stage: str = Field(examples=["2NF"])
    determinant: List[str] = Field(min_length=1)
    dependents: List[str] = Field(min_length=1)
    # None means the plan's observation / entity table respectively.
    source: Optional[str] = None
    target: Optional[str] = None

    @model_validator(mode="after")
    def _disjoint(self):
        overlap = set(self.determinant) & set(self.dependents)
        if overlap:
            raise ValueError(f"columns on both sides of the dependency: {sorted(overlap)}")
        return self


def _default_dependencies() -> List[FunctionalDependency]:
    return [
        FunctionalDependency(stage=stage, determinant=list(det), dependents=list(deps))
        for stage, det, deps in rules.DEPENDENCIES
    ]


class NormalizationPlan(BaseModel):
    index_columns: List[str] = Field(default_factory=lambda: list(rules.INDEX_COLUMNS))
    value_column_pattern: str = rules.VALUE_COLUMN_PATTERN
    natural_key: List[str] = Field(default_factory=lambda: list(rules.NATURAL_KEY))
    key_name: str = rules.KEY_NAME
    measure_name: str = rules.MEASURE_NAME
    value_name: str = rules.VALUE_NAME
    entity_table: str = rules.ENTITY_TABLE
    observation_table: str = rules.OBSERVATION_TABLE
    dependencies: List[FunctionalDependency] = Field(default_factory=_default_dependencies)

    @field_validator("value_column_pattern")
    @classmethod
    def _pattern_compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"value_column_pattern is not a valid regex: {exc}") from exc
        return value

    @model_validator(mode="after")
    def _generated_names_are_free(self):
        generated = [self.key_name, self.measure_name, self.value_name]
        if len(set(generated)) != len(generated):
            raise ValueError(f"key, measure and value names must differ: {generated}")
        clashing = [c for c in generated if c in self.index_columns]
        if clashing:
            raise ValueError(f"generated column names already used by index columns: {clashing}")
        return self

    @model_validator(mode="after")
    def _natural_key_is_indexed(self):
        missing = [c for c in self.natural_key if c not in self.index_columns]
        if missing:
            raise ValueError(f"natural key columns not among index columns: {missing}")
        if self.entity_table == self.observation_table:
            raise ValueError("entity and observation tables need distinct names")
        return self


class StageReport(BaseModel):
    stage: str
    action: str
    table: str
    columns: List[str] = Field(default_factory=list)
    rows_before: Optional[int] = None
    rows_after: Optional[int] = None


class TableOut(BaseModel):
    name: str
    primary_key: List[str]
    columns: List[str]
    rows: int
    records: List[Dict[str, Any]] = Field(default_factory=list)


class ReportSummary(BaseModel):
    input_rows: int
    input_columns: int
    value_columns: int
    missing_dropped: int = 0
    entities: int = 0
    observations: int = 0
    tables: int = 0


class DecompositionReport(BaseModel):
    summary: ReportSummary
    encoding: Dict[str, Any] = Field(default_factory=dict)
    stages: List[StageReport] = Field(default_factory=list)


class NormalizeResponse(BaseModel):
    tables: List[TableOut]
    report: DecompositionReport


class HealthResponse(BaseModel):
    ok: bool = True
