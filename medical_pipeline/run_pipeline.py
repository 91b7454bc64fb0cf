#!/usr/bin/env python3
"""
Command-line orchestration for the medical records pipeline.

Each subcommand runs one stage (load, transform, sync, aggregate, export)
against the configured warehouse; 'run' chains them for a full batch.
"""

import argparse
import os
import sys
from dataclasses import replace
from typing import Dict, List, Optional

from medical_pipeline.aggregator import SUMMARIES, Aggregator
from medical_pipeline.config import PipelineConfig
from medical_pipeline.errors import PipelineError
from medical_pipeline.landing import LandingStore
from medical_pipeline.loader import Loader
from medical_pipeline.schemas import ENTITY_SCHEMAS
from medical_pipeline.sync import IncrementalSync, SyncScheduler
from medical_pipeline.transformer import Transformer
from medical_pipeline.warehouse import Warehouse
from utils.logger import setup_logger

logger = setup_logger("ETL_Pipeline")

LAYER_PREFIXES = {
    'raw': ('raw_',),
    'staging': ('stg_',),
    'fact': ('dim_', 'fact_'),
    'curated': ('curated_',),
}


def infer_entity(csv_file: str) -> str:
    """
    Guess the entity from a file path: the parent directory name
    ('claims/2024-05.csv') or the file name prefix ('claims_2024-05.csv').
    """
    parent = os.path.basename(os.path.dirname(os.path.abspath(csv_file))).lower()
    if parent in ENTITY_SCHEMAS:
        return parent
    stem = os.path.splitext(os.path.basename(csv_file))[0].lower()
    for entity in ENTITY_SCHEMAS:
        if stem.startswith(entity):
            return entity
    raise PipelineError(f"Cannot infer entity for {csv_file}; pass --entity")


def layer_tables(warehouse: Warehouse, layer: str) -> List[str]:
    prefixes = LAYER_PREFIXES[layer]
    tables = [name for name in warehouse.table_names() if name.startswith(prefixes)]
    if layer == 'curated':
        tables = [name for name in tables if name.endswith('_snapshot')]
    return tables


def init_warehouse(config: PipelineConfig) -> Warehouse:
    warehouse = Warehouse(config.db_path)
    warehouse.create_tables()
    Aggregator(warehouse).create_views()
    return warehouse


def cmd_init(args, config: PipelineConfig) -> int:
    init_warehouse(config)
    print(f"Warehouse initialised at {config.db_path}")
    return 0


def cmd_load(args, config: PipelineConfig) -> int:
    warehouse = init_warehouse(config)
    uris = [path for path in args.files if path.startswith('s3://')]
    landing_store = LandingStore.from_config(config, ensure_bucket=False) if uris else None
    loader = Loader(warehouse, config.csv_format, landing_store=landing_store)

    results = [loader.load_uri(uri) for uri in uris]
    files = [(path, args.entity or infer_entity(path)) for path in args.files if path not in uris]
    if files:
        results += loader.load_files(files, max_workers=args.workers or config.loader_max_workers)
    for result in results:
        print(f"{result.source_file} -> raw_{result.entity}: "
              f"{result.rows_loaded} loaded, {result.rows_skipped} skipped")
    return 0


def cmd_transform(args, config: PipelineConfig) -> int:
    warehouse = init_warehouse(config)
    transformer = Transformer(warehouse)
    if args.entity:
        run = transformer.process_new if args.incremental else transformer.rebuild
        results = [run(args.entity)]
    elif args.incremental:
        results = transformer.process_all_new()
    else:
        results = transformer.rebuild_all()
    for result in results:
        print(f"stg_{result.entity}: {result.rows_written} valid, {result.rows_rejected} rejected, "
              f"{result.changes_logged} changes logged")
    return 0


def cmd_sync(args, config: PipelineConfig) -> int:
    warehouse = init_warehouse(config)
    result = IncrementalSync(warehouse).tick()
    print(f"Applied {result.changes_applied} changes (offset {result.offset}, {result.state.value})")
    for table, count in result.rows_written.items():
        print(f"  {table}: {count}")
    return 0


def cmd_schedule(args, config: PipelineConfig) -> int:
    warehouse = init_warehouse(config)
    interval = args.interval or config.sync_interval_seconds
    SyncScheduler(IncrementalSync(warehouse), interval_seconds=interval).run_forever()
    return 0


def cmd_aggregate(args, config: PipelineConfig) -> int:
    warehouse = init_warehouse(config)
    aggregator = Aggregator(warehouse)
    aggregator.refresh()
    names = [args.summary] if args.summary else list(SUMMARIES)
    for name in names:
        print(f"\n{name}:")
        print(aggregator.summary(name).to_string(index=False))
    return 0


def cmd_stats(args, config: PipelineConfig) -> int:
    warehouse = init_warehouse(config)
    print("Layer statistics:")
    for table, entry in warehouse.get_layer_stats().items():
        line = f"  {table}: {entry['row_count']} records"
        if entry.get('latest_ingestion_ts'):
            line += f" (latest ingestion {entry['latest_ingestion_ts']})"
        print(line)
    return 0


def export_layers(warehouse: Warehouse, layers: List[str], output_dir: str) -> Dict[str, List[str]]:
    exported = {}
    for layer in layers:
        files = []
        for table in layer_tables(warehouse, layer):
            output_file = warehouse.export_table(table, output_dir=output_dir)
            if output_file:
                files.append(output_file)
        exported[layer] = files
    return exported


def cmd_export(args, config: PipelineConfig) -> int:
    warehouse = init_warehouse(config)
    exported = export_layers(warehouse, args.layer or list(LAYER_PREFIXES), args.export_dir or config.export_dir)

    landing_store = LandingStore.from_config(config) if args.upload else None
    for layer, files in exported.items():
        for output_file in files:
            print(f"{layer}: {output_file}")
            if landing_store is not None:
                uri = landing_store.upload_export(output_file, layer)
                print(f"  uploaded: {uri if uri else 'Not uploaded'}")
    return 0


def cmd_upload(args, config: PipelineConfig) -> int:
    landing_store = LandingStore.from_config(config)
    failed = 0
    for path in args.files:
        uri = landing_store.upload_entity_file(path, args.entity or infer_entity(path))
        print(f"{path}: {uri if uri else 'Not uploaded'}")
        if uri is None:
            failed += 1
    return 1 if failed else 0


def cmd_run(args, config: PipelineConfig) -> int:
    warehouse = init_warehouse(config)

    files = [(path, infer_entity(path)) for path in args.files]
    if files:
        Loader(warehouse, config.csv_format).load_files(files, max_workers=config.loader_max_workers)
    Transformer(warehouse).process_all_new()
    IncrementalSync(warehouse).tick()
    Aggregator(warehouse).refresh()

    stats = warehouse.get_layer_stats()
    logger.info(f"Pipeline completed successfully. Layer statistics: {stats}")
    print("\nLayer statistics:")
    for table, entry in stats.items():
        print(f"  {table}: {entry['row_count']} records")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Medical records RAW -> STAGING -> CURATED pipeline')
    parser.add_argument('--db', type=str, help='Path to SQLite database (default: PIPELINE_DB_PATH)')
    parser.add_argument('--env-file', type=str, help='Optional .env file to load')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('init', help='Create warehouse tables and curated views')

    load = subparsers.add_parser('load', help='Load CSV files into RAW tables')
    load.add_argument('files', nargs='+', help='CSV files or s3://bucket/key URIs to load')
    load.add_argument('--entity', choices=sorted(ENTITY_SCHEMAS), help='Entity for every file')
    load.add_argument('--workers', type=int, help='Parallel loader workers')

    transform = subparsers.add_parser('transform', help='Build STAGING tables from RAW')
    transform.add_argument('--entity', choices=sorted(ENTITY_SCHEMAS))
    transform.add_argument('--incremental', action='store_true', help='Only process new RAW rows')

    subparsers.add_parser('sync', help='Run one incremental sync tick')

    schedule = subparsers.add_parser('schedule', help='Run incremental sync on a fixed interval')
    schedule.add_argument('--interval', type=int, help='Interval in seconds')

    aggregate = subparsers.add_parser('aggregate', help='Refresh and print curated summaries')
    aggregate.add_argument('--summary', choices=sorted(SUMMARIES))

    subparsers.add_parser('stats', help='Show row counts per table')

    export = subparsers.add_parser('export', help='Export layers to Parquet')
    export.add_argument('--layer', action='append', choices=sorted(LAYER_PREFIXES))
    export.add_argument('--export-dir', type=str, help='Directory for exported files')
    export.add_argument('--upload', action='store_true', help='Upload exports to the landing bucket')

    upload = subparsers.add_parser('upload', help='Upload CSV files to the landing bucket')
    upload.add_argument('files', nargs='+')
    upload.add_argument('--entity', choices=sorted(ENTITY_SCHEMAS))

    run = subparsers.add_parser('run', help='Load, transform, sync and aggregate in one go')
    run.add_argument('files', nargs='*', help='CSV files to load first')

    return parser


COMMANDS = {
    'init': cmd_init,
    'load': cmd_load,
    'transform': cmd_transform,
    'sync': cmd_sync,
    'schedule': cmd_schedule,
    'aggregate': cmd_aggregate,
    'stats': cmd_stats,
    'export': cmd_export,
    'upload': cmd_upload,
    'run': cmd_run,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point for the pipeline."""
    args = build_parser().parse_args(argv)
    config = PipelineConfig.from_env(args.env_file)
    if args.db:
        config = replace(config, db_path=args.db)

    try:
        return COMMANDS[args.command](args, config)
    except (PipelineError, OSError, ValueError) as e:
        logger.error(f"Error running '{args.command}': {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
