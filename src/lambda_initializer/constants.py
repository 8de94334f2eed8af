"""Constant values shared by the initializer construct, handler and CLI."""

import logging
import os

# Memory sizes accepted for the initializer function, in MB
ALLOWED_MEMORY_SIZES = (128, 256, 512)
DEFAULT_MEMORY_SIZE = 128

# Upper bound for the broker's synchronous invoke
BROKER_TIMEOUT_MINUTES = 10

# Width of the payload digest fragment in the physical resource id
HASH_PREFIX_LENGTH = 6

# Lambda rejects function names longer than this
MAX_FUNCTION_NAME_LENGTH = 64

FUNCTION_NAME_INFIX = "-LambdaInit"
SDK_CALL_INFIX = "-AwsSdkCall-"
BROKER_ROLE_ID = "LambdaInitializerBrokerRole"
BROKER_FUNCTION_ID = "LambdaInitializerBrokerFn"
BROKER_PROVIDER_ID = "LambdaInitializerBrokerProvider"

MYSQL_PORT = 3306
DB_USERNAME = "admin"
DB_NAME = "main"

INSTANCE_IDENTIFIER = os.getenv("RDS_INIT_INSTANCE_IDENTIFIER", "mysql-rds-02")


def _load_log_level() -> str:
    """Return ``RDS_INIT_LOG_LEVEL`` when it names a logging level, else ``INFO``."""

    level = os.getenv("RDS_INIT_LOG_LEVEL", "INFO").upper()
    if not isinstance(logging.getLevelName(level), int):
        return "INFO"
    return level


LOG_LEVEL = _load_log_level()
