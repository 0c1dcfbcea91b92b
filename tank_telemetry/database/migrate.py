"""
Database migration runner for the ingestion pipeline.
"""

import os
import sys
import logging
from pathlib import Path
from typing import List, Optional

from tank_telemetry.config import PipelineConfig
from tank_telemetry.database.connection import create_database_manager

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "database" / "migrations"


class MigrationManager:
    """Manages database migrations."""

    def __init__(self, db, migrations_dir: Optional[Path] = None):
        self.db = db
        self.migrations_dir = Path(migrations_dir) if migrations_dir else DEFAULT_MIGRATIONS_DIR

    def run_migration(self, migration_file: str) -> None:
        """Run a single migration file."""
        migration_path = self.migrations_dir / migration_file

        if not migration_path.exists():
            raise FileNotFoundError(f"Migration file not found: {migration_path}")

        logger.info(f"Running migration: {migration_file}")

        with open(migration_path, 'r', encoding='utf-8') as f:
            migration_sql = f.read()

        try:
            self.db.execute_script(migration_sql)
            logger.info(f"Migration completed successfully: {migration_file}")

        except Exception as e:
            logger.error(f"Migration failed: {migration_file} - {e}")
            raise

    def pending_migrations(self) -> List[str]:
        if not self.migrations_dir.exists():
            return []

        return sorted(
            f for f in os.listdir(self.migrations_dir)
            if f.endswith('.sql') and f[:3].isdigit()
        )

    def run_all_migrations(self) -> int:
        """Run all migration files in order; returns how many ran."""
        if not self.migrations_dir.exists():
            logger.warning(f"Migrations directory not found: {self.migrations_dir}")
            return 0

        migration_files = self.pending_migrations()

        if not migration_files:
            logger.info("No migration files found")
            return 0

        logger.info(f"Found {len(migration_files)} migration files")

        for migration_file in migration_files:
            self.run_migration(migration_file)

        logger.info("All migrations completed successfully")
        return len(migration_files)


def main():
    """Main entry point for running migrations."""
    from tank_telemetry.monitoring.logger_config import IngestionLogger

    IngestionLogger.setup_logging()

    try:
        config = PipelineConfig.from_env()
        db = create_database_manager(config)

        if config.database_backend == 'sqlite':
            db.initialize_schema()
        else:
            MigrationManager(db).run_all_migrations()
            db.close()

        print("✅ Database migrations completed successfully")

    except Exception as e:
        logger.error(f"Migration failed: {e}")
        print(f"❌ Migration failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
