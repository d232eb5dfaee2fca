from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

LOADRUNNER_CLOUD_BASE_URL = 'https://loadrunner-cloud.saas.microfocus.com/v1'


def _getenv_bool(name: str, default: bool) -> bool:
    v = os.getenv(name, str(default)).strip().lower()
    return v in ('1', 'true', 'yes', 'y', 'on')


def _getenv_number(name: str, default, kind=int):
    raw = os.getenv(name, '').strip()
    if not raw:
        return default
    try:
        return kind(raw)
    except ValueError:
        raise ValueError(f'{name} must be a number, got {raw!r}') from None


@dataclass(frozen=True)
class Settings:
    # remote api
    BASE_URL: str
    USER: str
    PASSWORD: str
    TENANT_ID: str
    PROJECT_ID: str
    LOAD_TEST_ID: str
    USE_TRACING_HEADER: bool

    # polling
    POLLING_PERIOD_SECONDS: float
    POLLING_MAX_DURATION_SECONDS: float
    POLLING_MAX_FAILURES: int | None

    # proxy
    USE_PROXY: bool
    PROXY_HOST: str
    PROXY_PORT: int

    # notifications
    KAFKA_BROKER: str
    KAFKA_EVENT_TOPIC: str

    TEST_RUN_ID: str
    LOG_LEVEL: str


def load_settings(env_file=None) -> Settings:
    if env_file is not None:
        load_dotenv(dotenv_path=env_file)
    else:
        env_path = Path(__file__).resolve().parent / '.env'
        load_dotenv(dotenv_path=env_path if env_path.exists() else None)

    return Settings(
        BASE_URL=os.getenv('LR_CLOUD_BASE_URL', LOADRUNNER_CLOUD_BASE_URL).strip(),
        USER=os.getenv('LR_CLOUD_USER', '').strip(),
        PASSWORD=os.getenv('LR_CLOUD_PW', ''),
        TENANT_ID=os.getenv('LR_CLOUD_TENANTID', '').strip(),
        PROJECT_ID=os.getenv('LR_CLOUD_PROJECT_ID', '').strip(),
        LOAD_TEST_ID=os.getenv('LR_CLOUD_LOAD_TEST_ID', '').strip(),
        USE_TRACING_HEADER=_getenv_bool('LR_CLOUD_USE_TRACING_HEADER', False),
        POLLING_PERIOD_SECONDS=_getenv_number('POLLING_PERIOD_SECONDS', 10.0, float),
        POLLING_MAX_DURATION_SECONDS=_getenv_number('POLLING_MAX_DURATION_SECONDS', 300.0, float),
        POLLING_MAX_FAILURES=_getenv_number('POLLING_MAX_FAILURES', None),
        USE_PROXY=_getenv_bool('USE_PROXY', False),
        PROXY_HOST=os.getenv('PROXY_HOST', 'localhost').strip(),
        PROXY_PORT=_getenv_number('PROXY_PORT', 8888),
        KAFKA_BROKER=os.getenv('KAFKA_BROKER', 'localhost:9092').strip(),
        KAFKA_EVENT_TOPIC=os.getenv('KAFKA_EVENT_TOPIC', 'loadrunner_events').strip(),
        TEST_RUN_ID=os.getenv('TEST_RUN_ID', '').strip(),
        LOG_LEVEL=os.getenv('LOG_LEVEL', 'INFO').strip().upper(),
    )
