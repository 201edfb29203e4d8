import os

# keep the module-level engine off the on-disk database
os.environ.setdefault("EXPENSES_DATABASE_URL", "sqlite+pysqlite:///:memory:")
