import logging

import structlog

SENSITIVE_KEYS = {
    "password",
    "access_token",
    "authorization",
    "consumer_key",
    "consumer_secret",
    "passkey",
    "pass_key",
    "secret_key",
}
PHONE_KEYS = {"phone", "phone_number", "phonenumber", "partya", "customer_phone"}


def mask_phone(value) -> str:
    text = str(value)
    if len(text) <= 6:
        return "***"
    return f"{text[:5]}***{text[-2:]}"


def redact_secrets(_, __, event_dict: dict) -> dict:
    for key in list(event_dict):
        lowered = key.lower()
        if lowered in SENSITIVE_KEYS:
            event_dict[key] = "REDACTED"
        elif lowered in PHONE_KEYS and event_dict[key]:
            event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def configure_logging(debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
