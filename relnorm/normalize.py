"""
Relational decomposition of a wide CSV table.

Responsibilities (v1):
- encoding detection + newline normalization on load
- schema validation against the plan
- UNF -> 1NF: unpivot repeated-measure columns, dropping missing cells
- surrogate keys per natural-key combination
- 2NF/3NF/4NF: move declared dependent columns out of the observation table

Every step returns new frames; inputs are never modified.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd
from charset_normalizer import from_bytes

from . import rules
from .errors import (
    CompositeKeyError,
    FunctionalDependencyError,
    KeyNotFoundError,
    SchemaMismatchError,
)
from .models import NormalizationPlan, StageReport

logger = logging.getLogger(__name__)

_ROW = "__row__"
_MERGE = "_merge"


def decode_csv_bytes(raw: bytes) -> Tuple[str, Dict[str, Any]]:
    """
    Decode uploaded bytes to text with LF newlines.

    Rules:
    - Detect encoding best-effort via charset-normalizer.
    - A UTF-8 BOM is stripped rather than kept as part of the first header.
    - If decode fails, fall back to UTF-8 with replacement characters and report it.
    - Sniff the delimiter among rules.CSV_DELIMITERS, defaulting to comma.
    """
    detected = None
    match = from_bytes(raw).best()
    if match is not None:
        detected = match.encoding

    decode_used = detected or rules.TARGET_ENCODING
    if raw.startswith(b"\xef\xbb\xbf") and (decode_used.lower().replace("-", "_") in ("utf_8", "utf8")):
        decode_used = "utf-8-sig"

    decode_fallback = False
    try:
        text = raw.decode(decode_used)
    except (UnicodeDecodeError, LookupError):
        text = raw.decode(rules.TARGET_ENCODING, errors="replace")
        decode_used = rules.TARGET_ENCODING
        decode_fallback = True

    crlf = text.count("\r\n")
    cr = text.count("\r") - crlf
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    delimiter = ","
    sniffed = False
    try:
        delimiter = csv.Sniffer().sniff(text[:4096], delimiters="".join(rules.CSV_DELIMITERS)).delimiter
        sniffed = True
    except csv.Error:
        pass

    report = {
        "detected": detected,
        "decode_used": decode_used,
        "decode_fallback": decode_fallback,
        "newlines_changed": (crlf > 0) or (cr > 0),
        "delimiter": delimiter,
        "delimiter_sniffed": sniffed,
    }
    return text, report


def check_columns(table: pd.DataFrame, columns: Sequence[str]) -> None:
    missing = [c for c in columns if c not in table.columns]
    if missing:
        raise SchemaMismatchError(missing)


def load_wide_csv(raw: bytes, required_columns: Sequence[str] = ()) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """Parse uploaded CSV bytes into a wide frame, checking the expected columns."""
    text, report = decode_csv_bytes(raw)
    if not text.strip():
        raise SchemaMismatchError(required_columns, "input is empty")

    try:
        wide = pd.read_csv(io.StringIO(text), sep=report["delimiter"], float_precision="round_trip")
    except pd.errors.ParserError as exc:
        raise SchemaMismatchError(required_columns, f"unparseable CSV: {exc}") from exc

    check_columns(wide, required_columns)
    logger.debug(f"Loaded {len(wide)} rows x {len(wide.columns)} columns ({report['decode_used']})")
    return wide, report


def select_value_columns(wide: pd.DataFrame, pattern: str) -> List[str]:
    """Repeated-measure columns, in header order."""
    regex = re.compile(pattern)
    columns = [c for c in wide.columns if regex.search(str(c))]
    if not columns:
        raise SchemaMismatchError([pattern], f"no columns match {pattern!r}")
    return columns


def unpivot(
    wide: pd.DataFrame,
    index_columns: Sequence[str],
    value_columns: Sequence[str],
    measure_name: str = rules.MEASURE_NAME,
    value_name: str = rules.VALUE_NAME,
) -> pd.DataFrame:
    """
    Turn N value columns into (measure, value) row pairs per input row.

    The measure is the 1-based position of the value column. Missing cells
    are dropped, so the result has one row per non-missing value, ordered by
    input row and then by measure.
    """
    if not value_columns:
        raise SchemaMismatchError([], "no repeated-measure columns to unpivot")
    index_columns = list(index_columns)
    check_columns(wide, index_columns + list(value_columns))

    positions = {column: i for i, column in enumerate(value_columns, start=1)}
    long = (
        wide.reset_index(drop=True)
        .rename_axis(_ROW)
        .reset_index()
        .melt(
            id_vars=[_ROW] + index_columns,
            value_vars=list(value_columns),
            var_name=measure_name,
            value_name=value_name,
        )
    )
    long[measure_name] = long[measure_name].map(positions)
    long = long.dropna(subset=[value_name])
    long = long.sort_values([_ROW, measure_name], kind="stable", ignore_index=True)

    logger.debug(
        f"Unpivoted {len(wide)} rows x {len(value_columns)} columns into {len(long)} rows"
    )
    return long.drop(columns=[_ROW])


def repivot(
    long: pd.DataFrame,
    key_columns: Sequence[str],
    value_columns: Sequence[str],
    measure_name: str = rules.MEASURE_NAME,
    value_name: str = rules.VALUE_NAME,
    entities: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """Inverse of unpivot: one column per measure, missing cells back as NaN.

    Rows whose measures were all missing only come back when `entities`
    (the identifying columns of the original rows) is given; its row order
    is kept.
    """
    key_columns = list(key_columns)
    cells = long.set_index(key_columns + [measure_name])[value_name].unstack(measure_name)
    cells = cells.reindex(columns=range(1, len(value_columns) + 1))
    cells.columns = list(value_columns)
    cells = cells.reset_index()

    if entities is None:
        return cells
    return entities.reset_index(drop=True).merge(cells, on=key_columns, how="left")


def assign_keys(
    long: pd.DataFrame,
    natural_key_columns: Sequence[str],
    key_name: str = rules.KEY_NAME,
) -> pd.DataFrame:
    """One row per distinct natural key, numbered 1..n in first-seen order."""
    natural_key_columns = list(natural_key_columns)
    check_columns(long, natural_key_columns)

    keys = long.loc[:, natural_key_columns].drop_duplicates().reset_index(drop=True)
    keys.insert(0, key_name, range(1, len(keys) + 1))
    return keys


def join_keys(
    long: pd.DataFrame,
    keys: pd.DataFrame,
    natural_key_columns: Sequence[str],
    key_name: str = rules.KEY_NAME,
) -> pd.DataFrame:
    """Replace the natural-key columns of `long` with their surrogate key."""
    natural_key_columns = list(natural_key_columns)
    check_columns(long, natural_key_columns)

    joined = long.merge(
        keys.loc[:, [key_name] + natural_key_columns],
        on=natural_key_columns,
        how="left",
        validate="many_to_one",
        indicator=_MERGE,
    )
    unmatched = joined.loc[joined[_MERGE] == "left_only", natural_key_columns].drop_duplicates()
    if not unmatched.empty:
        raise KeyNotFoundError(natural_key_columns, list(unmatched.itertuples(index=False, name=None)))

    joined = joined.drop(columns=natural_key_columns + [_MERGE])
    columns = [key_name] + [c for c in joined.columns if c != key_name]
    return joined.loc[:, columns]


def check_unique(table: pd.DataFrame, columns: Sequence[str]) -> None:
    columns = list(columns)
    duplicated = table.duplicated(subset=columns, keep=False)
    if duplicated.any():
        duplicates = table.loc[duplicated, columns].drop_duplicates()
        raise CompositeKeyError(columns, list(duplicates.itertuples(index=False, name=None)))


def check_dependency(table: pd.DataFrame, determinant: Sequence[str], dependents: Sequence[str]) -> None:
    """Raise unless every determinant value maps to a single dependents value.

    Missing values count as values, so NaN and 3 for the same key conflict.
    """
    counts = table.groupby(list(determinant), dropna=False, sort=False)[list(dependents)].nunique(dropna=False)
    conflicting = counts[(counts > 1).any(axis=1)]
    if not conflicting.empty:
        raise FunctionalDependencyError(determinant, dependents, conflicting.index.tolist())


def extract_dependent_columns(
    table: pd.DataFrame,
    functional_key: Sequence[str],
    columns: Sequence[str],
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Move `columns`, which depend on `functional_key` alone, into their own table.

    Returns (reduced_table, extracted_table). Joining the two on
    `functional_key` gives back `table`.
    """
    functional_key = list(functional_key)
    columns = list(columns)
    check_columns(table, functional_key + columns)
    check_dependency(table, functional_key, columns)

    extracted = (
        table.loc[:, functional_key + columns]
        .drop_duplicates(subset=functional_key)
        .reset_index(drop=True)
    )
    reduced = table.drop(columns=columns)
    return reduced, extracted


def _merge_into(
    target: Optional[pd.DataFrame],
    extracted: pd.DataFrame,
    functional_key: List[str],
    name: str,
) -> pd.DataFrame:
    if target is None:
        return extracted

    check_columns(target, functional_key)
    clashing = [c for c in extracted.columns if c in target.columns and c not in functional_key]
    if clashing:
        raise SchemaMismatchError(clashing, f"columns already present in {name!r}: {', '.join(clashing)}")
    return target.merge(extracted, on=functional_key, how="left", validate="many_to_one")


@dataclass
class Decomposition:
    entity_table: str
    observation_table: str
    tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    primary_keys: Dict[str, List[str]] = field(default_factory=dict)
    stages: List[StageReport] = field(default_factory=list)
    input_rows: int = 0
    input_columns: int = 0
    value_columns: int = 0
    missing_dropped: int = 0

    @property
    def entities(self) -> pd.DataFrame:
        return self.tables[self.entity_table]

    @property
    def observations(self) -> pd.DataFrame:
        return self.tables[self.observation_table]


def normalize_wide(wide: pd.DataFrame, plan: Optional[NormalizationPlan] = None) -> Decomposition:
    """
    Decompose a wide table according to `plan`.

    unpivot -> assign_keys -> join_keys -> one extract per declared
    dependency, in plan order.
    """
    plan = plan or NormalizationPlan()
    check_columns(wide, plan.index_columns)
    generated = [plan.key_name, plan.measure_name, plan.value_name]
    clashing = [c for c in generated if c in wide.columns]
    if clashing:
        raise SchemaMismatchError(clashing, f"input already has generated column(s): {', '.join(clashing)}")
    value_columns = select_value_columns(wide, plan.value_column_pattern)

    entity, observation = plan.entity_table, plan.observation_table
    result = Decomposition(
        entity_table=entity,
        observation_table=observation,
        input_rows=len(wide),
        input_columns=len(wide.columns),
        value_columns=len(value_columns),
    )
    result.stages.append(
        StageReport(stage="UNF", action="load", table="input", columns=value_columns, rows_after=len(wide))
    )

    long = unpivot(wide, plan.index_columns, value_columns, plan.measure_name, plan.value_name)
    result.missing_dropped = len(wide) * len(value_columns) - len(long)
    result.stages.append(
        StageReport(
            stage="1NF",
            action="unpivot",
            table=observation,
            columns=[plan.measure_name, plan.value_name],
            rows_before=len(wide),
            rows_after=len(long),
        )
    )
    logger.info(f"1NF: {len(long)} observations, {result.missing_dropped} missing cells dropped")

    keys = assign_keys(long, plan.natural_key, plan.key_name)
    result.stages.append(
        StageReport(
            stage="1NF",
            action="assign_keys",
            table=entity,
            columns=list(plan.natural_key),
            rows_before=len(long),
            rows_after=len(keys),
        )
    )

    before = len(long)
    long = join_keys(long, keys, plan.natural_key, plan.key_name)
    check_unique(long, [plan.key_name, plan.measure_name])
    result.stages.append(
        StageReport(
            stage="1NF",
            action="join_keys",
            table=observation,
            columns=list(plan.natural_key),
            rows_before=before,
            rows_after=len(long),
        )
    )
    logger.info(f"1NF: {len(keys)} entities keyed on {plan.natural_key}")

    result.tables = {entity: keys, observation: long}
    result.primary_keys = {entity: [plan.key_name], observation: [plan.key_name, plan.measure_name]}

    for dependency in plan.dependencies:
        source = dependency.source or observation
        target = dependency.target or entity
        if source not in result.tables:
            raise SchemaMismatchError([source], f"unknown source table {source!r}")

        before = len(result.tables[source])
        reduced, extracted = extract_dependent_columns(
            result.tables[source], dependency.determinant, dependency.dependents
        )
        result.tables[source] = reduced
        result.tables[target] = _merge_into(
            result.tables.get(target), extracted, list(dependency.determinant), target
        )
        result.primary_keys.setdefault(target, list(dependency.determinant))
        result.stages.append(
            StageReport(
                stage=dependency.stage,
                action="extract",
                table=target,
                columns=list(dependency.dependents),
                rows_before=before,
                rows_after=len(extracted),
            )
        )
        logger.info(
            f"{dependency.stage}: moved {dependency.dependents} from {source!r} to {target!r} "
            f"on {dependency.determinant}"
        )

    return result


def _records(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    # object dtype boxes numpy scalars as Python values at full precision
    return frame.astype(object).where(frame.notna(), None).to_dict(orient="records")


def decompose_csv_bytes(raw: bytes, plan: Optional[NormalizationPlan] = None) -> Dict[str, Any]:
    """
    Load, decompose and serialize.
    Returns a dict matching the API's response envelope.
    """
    plan = plan or NormalizationPlan()
    wide, encoding = load_wide_csv(raw, plan.index_columns)
    result = normalize_wide(wide, plan)

    tables = [
        {
            "name": name,
            "primary_key": result.primary_keys[name],
            "columns": [str(c) for c in frame.columns],
            "rows": len(frame),
            "records": _records(frame),
        }
        for name, frame in result.tables.items()
    ]
    return {
        "tables": tables,
        "report": {
            "summary": {
                "input_rows": result.input_rows,
                "input_columns": result.input_columns,
                "value_columns": result.value_columns,
                "missing_dropped": result.missing_dropped,
                "entities": len(result.entities),
                "observations": len(result.observations),
                "tables": len(tables),
            },
            "encoding": encoding,
            "stages": [stage.model_dump() for stage in result.stages],
        },
    }
