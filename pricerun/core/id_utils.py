import shortuuid


def generate_shortuuid() -> str:
    return shortuuid.uuid()


def generate_worker_id(prefix: str = "worker") -> str:
    return f"{prefix}-{shortuuid.ShortUUID().random(length=8)}"
