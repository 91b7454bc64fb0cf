"""
Column schemas for every entity landed by the pipeline.

Each entity maps one landing prefix to one RAW table and one STAGING table.
"""

from dataclasses import dataclass
from typing import Dict, List, Tuple

from medical_pipeline.errors import SchemaError

TEXT = "TEXT"
INTEGER = "INTEGER"
REAL = "REAL"
DATE = "DATE"


@dataclass(frozen=True)
class Column:
    """One typed CSV column and the staging rules that apply to it."""

    name: str
    sql_type: str = TEXT
    required: bool = False
    categorical: bool = False
    non_negative: bool = False
    geocoded: bool = False


@dataclass(frozen=True)
class EntitySchema:
    """Fixed column layout for one entity type."""

    name: str
    key: str
    columns: Tuple[Column, ...]

    @property
    def prefix(self) -> str:
        return f"{self.name}/"

    @property
    def raw_table(self) -> str:
        return f"raw_{self.name}"

    @property
    def staging_table(self) -> str:
        return f"stg_{self.name}"

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    @property
    def required_columns(self) -> List[str]:
        return [column.name for column in self.columns if column.required]

    @property
    def categorical_columns(self) -> List[str]:
        return [column.name for column in self.columns if column.categorical]

    @property
    def non_negative_columns(self) -> List[str]:
        return [column.name for column in self.columns if column.non_negative]

    @property
    def geocoded_columns(self) -> List[str]:
        return [column.name for column in self.columns if column.geocoded]


PATIENTS = EntitySchema(
    name="patients",
    key="patient_id",
    columns=(
        Column("patient_id", TEXT, required=True),
        Column("name", TEXT),
        Column("age", INTEGER, non_negative=True),
        Column("gender", TEXT, categorical=True),
        Column("location", TEXT, geocoded=True),
        Column("admission_date", DATE),
    ),
)

CLAIMS = EntitySchema(
    name="claims",
    key="claim_id",
    columns=(
        Column("claim_id", TEXT, required=True),
        Column("patient_id", TEXT, required=True),
        Column("claim_amount", REAL, required=True, non_negative=True),
        Column("claim_type", TEXT, categorical=True),
        Column("claim_date", DATE),
        Column("status", TEXT, categorical=True),
    ),
)

TREATMENTS = EntitySchema(
    name="treatments",
    key="treatment_id",
    columns=(
        Column("treatment_id", TEXT, required=True),
        Column("patient_id", TEXT, required=True),
        Column("department", TEXT, categorical=True),
        Column("diagnosis", TEXT, categorical=True),
        Column("symptom", TEXT, categorical=True),
        Column("treatment", TEXT, categorical=True),
        Column("cost", REAL, required=True, non_negative=True),
        Column("treatment_date", DATE),
    ),
)

ENTITY_SCHEMAS: Dict[str, EntitySchema] = {
    schema.name: schema for schema in (PATIENTS, CLAIMS, TREATMENTS)
}


def get_schema(entity: str) -> EntitySchema:
    """
    Look up the schema for an entity name.

    Raises:
        SchemaError: If the entity is not declared
    """
    try:
        return ENTITY_SCHEMAS[entity.lower()]
    except KeyError:
        raise SchemaError(
            f"Unknown entity '{entity}'. Expected one of: {', '.join(sorted(ENTITY_SCHEMAS))}"
        ) from None


def schema_for_key(object_key: str) -> EntitySchema:
    """
    Resolve the entity schema from a landing object key such as
    'claims/2024-05-01.csv'. Keys may carry leading path segments
    ('landing/claims/...'); the first segment that names an entity wins.

    Raises:
        SchemaError: If no segment of the key names a known entity
    """
    for segment in object_key.strip("/").split("/")[:-1]:
        schema = ENTITY_SCHEMAS.get(segment.lower())
        if schema is not None:
            return schema
    raise SchemaError(f"No entity prefix configured for object key '{object_key}'")
