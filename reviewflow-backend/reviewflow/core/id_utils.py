import shortuuid


def generate_shortuuid() -> str:
    return shortuuid.uuid()


def generate_short_token(length: int = 12) -> str:
    return shortuuid.ShortUUID().random(length=length)


def generate_message_id(prefix: str) -> str:
    """Deterministic-format id for stub channel providers, e.g. ``sms-3kTMd92jXq0aB1cD``."""
    return f"{prefix}-{generate_short_token(16)}"
