import os


class Config:
    """Base configuration"""

    # Database (run history)
    DATA_DIR = os.environ.get('DATA_DIR') or os.path.abspath('data')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "stackvault.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Local store
    BACKUP_LOCAL_DIR = os.environ.get('BACKUP_LOCAL_DIR') or './backups'
    BACKUP_RETENTION_DAYS = os.environ.get('BACKUP_RETENTION_DAYS') or '30'
    BACKUP_COMPRESSION = os.environ.get('BACKUP_COMPRESSION') or 'true'
    BACKUP_TARGETS = os.environ.get('BACKUP_TARGETS') or 'mysql,postgres,redis,clickhouse'

    # Remote sync (S3 or compatible)
    S3_BACKUP_ENABLED = os.environ.get('S3_BACKUP_ENABLED') or 'false'
    S3_BUCKET_NAME = os.environ.get('S3_BUCKET_NAME')
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    S3_ACCESS_KEY_ID = os.environ.get('S3_ACCESS_KEY_ID')
    S3_SECRET_ACCESS_KEY = os.environ.get('S3_SECRET_ACCESS_KEY')

    # Targets
    MYSQL_CONTAINER = os.environ.get('MYSQL_CONTAINER') or 'mysql'
    MYSQL_USER = os.environ.get('MYSQL_USER') or 'root'
    MYSQL_ROOT_PASSWORD = os.environ.get('MYSQL_ROOT_PASSWORD') or 'password'
    POSTGRES_CONTAINER = os.environ.get('POSTGRES_CONTAINER') or 'postgres'
    POSTGRES_USER = os.environ.get('POSTGRES_USER') or 'postgres'
    POSTGRES_PASSWORD = os.environ.get('POSTGRES_PASSWORD')
    REDIS_CONTAINER = os.environ.get('REDIS_CONTAINER') or 'redis'
    REDIS_PASSWORD = os.environ.get('REDIS_PASSWORD') or 'password'
    REDIS_PORT = os.environ.get('REDIS_PORT') or '6380'
    REDIS_TLS = os.environ.get('REDIS_TLS') or 'true'
    REDIS_DATA_PATH = os.environ.get('REDIS_DATA_PATH') or '/data/dump.rdb'
    CLICKHOUSE_CONTAINER = os.environ.get('CLICKHOUSE_CONTAINER') or 'tinybird'
    CLICKHOUSE_USER = os.environ.get('CLICKHOUSE_USER')
    CLICKHOUSE_PASSWORD = os.environ.get('CLICKHOUSE_PASSWORD')

    # External calls (seconds)
    COMMAND_TIMEOUT = os.environ.get('COMMAND_TIMEOUT') or '3600'
    SNAPSHOT_TIMEOUT = os.environ.get('SNAPSHOT_TIMEOUT') or '300'

    # Logs, crontab snapshots and scheduled command
    LOG_DIR = os.environ.get('LOG_DIR') or 'logs'
    CRON_DIR = os.environ.get('CRON_DIR') or 'cron'
    SCHEDULE_WORKDIR = os.environ.get('SCHEDULE_WORKDIR') or os.getcwd()
    SCHEDULE_EXECUTABLE = os.environ.get('SCHEDULE_EXECUTABLE') or 'stackvault'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory history, remote sync off"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    S3_BACKUP_ENABLED = 'false'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
