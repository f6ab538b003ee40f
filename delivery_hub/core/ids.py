import re
import unicodedata
import uuid

def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"

def new_batch_id() -> str:
    # correlation id shared by every log entry of one user-initiated operation
    return str(uuid.uuid4())

def slugify(text: str) -> str:
    # "Grünerløkka Vest" -> "grunerlokka-vest"
    folded = unicodedata.normalize("NFKD", text or "").replace("ø", "o").replace("Ø", "o").replace("æ", "ae").replace("Æ", "ae")
    ascii_only = folded.encode("ascii", "ignore").decode("ascii").lower()
    return re.sub(r"[^a-z0-9]+", "-", ascii_only).strip("-")
