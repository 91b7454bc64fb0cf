"""
Medical Records Medallion Pipeline

Modules:
    schemas.py      - Column schemas and landing prefixes per entity.
    warehouse.py    - SQLite warehouse, DDL and layer exports.
    landing.py      - S3 landing store for uploaded CSV files.
    trigger.py      - File-arrival handler that signals the loader.
    loader.py       - Loads landed CSV files into append-only RAW tables.
    transformer.py  - Cleans and validates RAW rows into STAGING tables.
    changelog.py    - Change-log over STAGING and consumer offsets.
    sync.py         - Scheduled incremental sync into dimension/fact tables.
    aggregator.py   - CURATED summary views and snapshots.
    run_pipeline.py - Command-line orchestration of every stage.

Version: 1.0.0
"""

__version__ = "1.0.0"
