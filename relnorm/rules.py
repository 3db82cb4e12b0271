"""
Deterministic decomposition rules.

Defaults describe the weekly song-chart layout: one row per song, one
`wkN` column per chart week. Anything else is supplied per request
through a NormalizationPlan.
"""

TARGET_ENCODING = "utf-8"
CSV_DELIMITERS = [",", ";", "\t", "|"]

INDEX_COLUMNS = ["year", "artist", "track", "time", "date.entered"]
VALUE_COLUMN_PATTERN = r"^wk\d+$"
NATURAL_KEY = ["artist", "track"]

KEY_NAME = "id"
MEASURE_NAME = "week"
VALUE_NAME = "rank"

ENTITY_TABLE = "songs"
OBSERVATION_TABLE = "ranks"

# (stage, determinant, dependents): each moves columns out of the
# observation table into the entity table.
DEPENDENCIES = [
    ("2NF", [KEY_NAME], ["time"]),
    ("3NF", [KEY_NAME], ["date.entered"]),
    ("4NF", [KEY_NAME], ["year"]),
]
