"""
CURATED layer aggregations.

Each summary is a read-only SQL view grouping the staging layer by one
categorical dimension, so reading it always reflects the committed data.
refresh() additionally materialises every view into a *_snapshot table
for exports, recomputed from scratch each time.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import pandas as pd

from medical_pipeline.warehouse import Warehouse, now_timestamp
from utils.logger import setup_logger

logger = setup_logger("Aggregator")


@dataclass(frozen=True)
class Summary:
    name: str
    group_by: Tuple[str, ...]
    query: str

    @property
    def snapshot_table(self) -> str:
        return f"{self.name}_snapshot"


SUMMARIES: Dict[str, Summary] = {
    summary.name: summary
    for summary in (
        Summary(
            name="curated_patients_by_gender",
            group_by=("gender",),
            query='''
            SELECT
                gender,
                COUNT(*) AS patient_count,
                AVG(age) AS avg_age
            FROM stg_patients
            GROUP BY gender
            ''',
        ),
        Summary(
            name="curated_claims_by_type",
            group_by=("claim_type",),
            query='''
            SELECT
                claim_type,
                COUNT(*) AS claim_count,
                SUM(claim_amount) AS total_claim_amount,
                AVG(claim_amount) AS avg_claim_amount
            FROM stg_claims
            GROUP BY claim_type
            ''',
        ),
        Summary(
            name="curated_treatments_by_department",
            group_by=("department",),
            query='''
            SELECT
                department,
                COUNT(*) AS treatment_count,
                SUM(cost) AS total_cost,
                AVG(cost) AS avg_cost
            FROM stg_treatments
            GROUP BY department
            ''',
        ),
        Summary(
            name="curated_diagnosis_treatment",
            group_by=("diagnosis", "treatment"),
            query='''
            SELECT
                diagnosis,
                treatment,
                COUNT(*) AS treatment_count,
                AVG(cost) AS avg_cost
            FROM stg_treatments
            GROUP BY diagnosis, treatment
            ''',
        ),
    )
}


class Aggregator:
    """Owns the curated views and their materialised snapshots."""

    def __init__(self, warehouse: Warehouse):
        self.warehouse = warehouse

    def create_views(self) -> None:
        """Create every curated view and its (empty) snapshot table."""
        with self.warehouse.transaction() as conn:
            for summary in SUMMARIES.values():
                conn.execute(f"CREATE VIEW IF NOT EXISTS {summary.name} AS {summary.query}")
                conn.execute(
                    f'''
                    CREATE TABLE IF NOT EXISTS {summary.snapshot_table} AS
                    SELECT *, '' AS processing_timestamp FROM {summary.name} WHERE 0
                    '''
                )
        logger.info(f"Curated views ready: {', '.join(SUMMARIES)}")

    def summary(self, name: str) -> pd.DataFrame:
        """
        Query one curated view.

        Args:
            name: View name, with or without the 'curated_' prefix

        Returns:
            DataFrame ordered by the view's grouping columns
        """
        summary = self._get(name)
        order_by = ", ".join(summary.group_by)
        conn = self.warehouse.connect()
        try:
            return pd.read_sql(f"SELECT * FROM {summary.name} ORDER BY {order_by}", conn)
        finally:
            conn.close()

    def refresh(self, names: Optional[List[str]] = None) -> Dict[str, int]:
        """
        Recompute snapshot tables from their views in one transaction.

        Returns:
            Row count written per snapshot table
        """
        summaries = [self._get(name) for name in names] if names else list(SUMMARIES.values())
        processing_timestamp = now_timestamp()
        counts = {}
        with self.warehouse.transaction() as conn:
            for summary in summaries:
                conn.execute(f"DELETE FROM {summary.snapshot_table}")
                cursor = conn.execute(
                    f"INSERT INTO {summary.snapshot_table} SELECT *, ? FROM {summary.name}",
                    (processing_timestamp,),
                )
                counts[summary.snapshot_table] = cursor.rowcount
        logger.info(f"Refreshed curated snapshots: {counts}")
        return counts

    def _get(self, name: str) -> Summary:
        key = name if name.startswith("curated_") else f"curated_{name}"
        try:
            return SUMMARIES[key]
        except KeyError:
            raise ValueError(
                f"Unknown summary '{name}'. Expected one of: {', '.join(SUMMARIES)}"
            ) from None
