import logging.config

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = ("private_key", "signer_private_key", "signature", "secret", "token", "password")


def build_logging_config(settings) -> dict:
    formatter = "json" if settings.LOG_JSON else "plain"
    handlers = ["console"]
    config = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'json': {
                '()': 'pythonjsonlogger.jsonlogger.JsonFormatter',
                'format': '%(asctime)s %(name)s %(levelname)s %(message)s %(batch_id)s %(tx_hash)s',
            },
            'plain': {
                'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
            },
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': formatter,
            },
        },
        'loggers': {
            'pharmatrace': {
                'handlers': handlers,
                'level': settings.LOG_LEVEL,
                'propagate': False,
            },
            'sqlalchemy.engine': {
                'handlers': ['console'],
                'level': 'WARNING',  # SQL statements carry batch data
            },
        },
    }
    if settings.LOG_FILE:
        config['handlers']['file'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': settings.LOG_FILE,
            'maxBytes': 1024 * 1024 * 10,  # 10MB
            'backupCount': 10,
            'formatter': 'json',
        }
        handlers.append('file')
    return config


def configure_logging(settings):
    logging.config.dictConfig(build_logging_config(settings))


def _redact(mapping):
    return {
        key: REDACTED if any(word in str(key).lower() for word in SENSITIVE_KEYS) else value
        for key, value in mapping.items()
    }


def redact_event_for_sentry(event):
    """
    Strip signer keys, signatures and credentials before an event leaves the process.
    """
    request = event.get('request')
    if request:
        request.pop('cookies', None)
        headers = request.get('headers')
        if headers:
            for name in list(headers):
                if name.lower() in ('authorization', 'x-api-key'):
                    headers[name] = REDACTED

    for exc in (event.get('exception') or {}).get('values', []):
        stacktrace = exc.get('stacktrace') or {}
        for frame in stacktrace.get('frames', []):
            if 'vars' in frame:
                frame['vars'] = _redact(frame['vars'])

    if 'extra' in event:
        event['extra'] = _redact(event['extra'])
    return event


def init_sentry(settings) -> bool:
    if not settings.SENTRY_DSN:
        return False
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[
            FastApiIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        send_default_pii=False,
        before_send=lambda event, hint: redact_event_for_sentry(event),
    )
    return True
