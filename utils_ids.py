from datetime import datetime
from uuid import uuid4


def generate_id(prefix: str) -> str:
    timestamp = datetime.utcnow().strftime("%Y%m%d")
    unique = str(uuid4()).split('-')[0].upper()
    return f"{prefix}{timestamp}{unique}"
