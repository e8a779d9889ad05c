import os

from pgbackup.models import BackupJob


class Config:
    """Base configuration (defaults match a stock single-host install)"""

    # PostgreSQL
    DB_HOST = 'localhost'
    DB_PORT = '5432'
    DB_USER = 'postgres'
    DB_PASSWORD = ''
    DB_NAME = 'mydb'
    SCHEMAS = 'schema1,schema2'

    # Backup
    BACKUP_ROOT = '/var/backups/postgres'
    GZIP_THREADS = '4'
    COMPRESSION_LEVEL = '9'
    COMPRESSOR = 'pigz'

    # Logging
    LOG_FILE = '/var/log/pg_backup.log'
    LOG_LEVEL = 'INFO'

    # Remote copy over SSH
    REMOTE_ENABLE = 'false'
    REMOTE_HOST = 'remote.example.com'
    REMOTE_USER = 'user'
    REMOTE_PASSWORD = ''
    REMOTE_KEY_FILE = ''
    REMOTE_DIR = '/remote/backup/path'
    REMOTE_PORT = '22'

    # Retention (days)
    DAILY_RETENTION_DAYS = '7'
    WEEKLY_RETENTION_DAYS = '28'
    MONTHLY_RETENTION_DAYS = '365'


ENV_PREFIX = 'PGBACKUP_'


def _get(environ, name: str) -> str:
    return environ.get(ENV_PREFIX + name, getattr(Config, name))


def _get_int(environ, name: str, minimum: int = 0) -> int:
    raw = _get(environ, name)
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{ENV_PREFIX}{name} must be >= {minimum}, got {value}")
    return value


def _get_bool(environ, name: str) -> bool:
    raw = str(_get(environ, name)).strip().lower()
    if raw in ('1', 'true', 'yes', 'on'):
        return True
    if raw in ('0', 'false', 'no', 'off', ''):
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


def load_job(environ=None) -> BackupJob:
    """
    Build the BackupJob for this run from the environment.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Immutable BackupJob

    Raises:
        ValueError: If a numeric or boolean option is malformed
    """
    if environ is None:
        environ = os.environ

    # Duplicates would build the same archive name twice in one second
    schemas = tuple(dict.fromkeys(
        s.strip() for s in str(_get(environ, 'SCHEMAS')).split(',')
        if s.strip()
    ))

    compression_level = _get_int(environ, 'COMPRESSION_LEVEL', minimum=1)
    if compression_level > 9:
        raise ValueError(
            f"{ENV_PREFIX}COMPRESSION_LEVEL must be between 1 and 9, got {compression_level}"
        )

    compressor = str(_get(environ, 'COMPRESSOR')).strip().lower()
    if compressor not in ('pigz', 'gzip'):
        raise ValueError(
            f"{ENV_PREFIX}COMPRESSOR must be 'pigz' or 'gzip', got {compressor!r}"
        )

    return BackupJob(
        db_host=_get(environ, 'DB_HOST'),
        db_port=_get_int(environ, 'DB_PORT', minimum=1),
        db_user=_get(environ, 'DB_USER'),
        db_password=_get(environ, 'DB_PASSWORD'),
        db_name=_get(environ, 'DB_NAME'),
        schemas=schemas,
        backup_root=_get(environ, 'BACKUP_ROOT'),
        gzip_threads=_get_int(environ, 'GZIP_THREADS', minimum=1),
        compression_level=compression_level,
        compressor=compressor,
        log_file=_get(environ, 'LOG_FILE') or None,
        log_level=_get(environ, 'LOG_LEVEL'),
        remote_enable=_get_bool(environ, 'REMOTE_ENABLE'),
        remote_host=_get(environ, 'REMOTE_HOST'),
        remote_user=_get(environ, 'REMOTE_USER'),
        remote_password=_get(environ, 'REMOTE_PASSWORD') or None,
        remote_key_file=_get(environ, 'REMOTE_KEY_FILE') or None,
        remote_dir=_get(environ, 'REMOTE_DIR'),
        remote_port=_get_int(environ, 'REMOTE_PORT', minimum=1),
        daily_retention_days=_get_int(environ, 'DAILY_RETENTION_DAYS'),
        weekly_retention_days=_get_int(environ, 'WEEKLY_RETENTION_DAYS'),
        monthly_retention_days=_get_int(environ, 'MONTHLY_RETENTION_DAYS'),
    )
