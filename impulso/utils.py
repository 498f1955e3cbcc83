import json
from typing import Optional, Any

TRUE_VALUES = {"1", "true", "t", "yes", "y", "si", "sí", "x"}
FALSE_VALUES = {"0", "false", "f", "no", "n"}

def to_int_or_none(x):
    if x is None or x == "":
        return None
    if isinstance(x, bool):
        return int(x)
    if isinstance(x, str):
        x = x.replace(",", "").strip()
    # ValueError on garbage; callers decide whether that is a row error
    f = float(x)
    if not f.is_integer():
        raise ValueError(f"'{x}' no es un entero")
    return int(f)

def to_float_or_none(x):
    if x is None or x == "":
        return None
    if isinstance(x, str):
        x = x.replace(",", "").strip()
    return float(x)

def to_bool_or_none(x):
    if x is None or x == "":
        return None
    if isinstance(x, bool):
        return x
    if isinstance(x, (int, float)) and x in (0, 1):
        return bool(x)
    s = str(x).strip().lower()
    if s in TRUE_VALUES:
        return True
    if s in FALSE_VALUES:
        return False
    raise ValueError(f"'{x}' no es un valor booleano")

def to_date_iso(x: Optional[str]):
    if x is None or str(x).strip() == "":
        return None
    import pandas as pd
    ts = pd.to_datetime(str(x).strip(), errors="coerce")
    if pd.isna(ts):
        raise ValueError(f"'{x}' no es una fecha")
    return ts.date().isoformat()

def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False)
