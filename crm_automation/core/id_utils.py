import shortuuid


def generate_shortuuid() -> str:
    return shortuuid.uuid()


def generate_job_id(prefix: str) -> str:
    return f"{prefix}:{shortuuid.uuid()}"
