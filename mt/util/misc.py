import uuid
from datetime import datetime


# Simply returns the current local time as an ISO8601 string with timezone offset.
def now_iso():
    return datetime.now().astimezone().isoformat()

# Fresh opaque identifier for stored records.
def new_id():
    return uuid.uuid4().hex

# Coerces a form value to an int, falling back to the default for blanks/garbage/zero, the same way the
# reading form treats empty inputs.
def int_or_default(value, default):
    try:
        value = int(value)
    except (TypeError, ValueError):
        return default
    return value or default
