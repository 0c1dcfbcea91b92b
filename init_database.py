#!/usr/bin/env python3

"""
Initialize the local database for the telemetry pipeline.
"""

import sys

from tank_telemetry.config import PipelineConfig
from tank_telemetry.database.connection import create_database_manager
from tank_telemetry.database.migrate import MigrationManager

config = PipelineConfig.from_env()
db = create_database_manager(config)

if config.database_backend == 'sqlite':
    if not db.initialize_schema():
        print(f'Failed to initialize {config.sqlite_db_path}')
        sys.exit(1)
    print(f'Database initialized successfully: {config.sqlite_db_path}')
else:
    count = MigrationManager(db).run_all_migrations()
    db.close()
    print(f'Database initialized successfully: {count} migrations applied')
