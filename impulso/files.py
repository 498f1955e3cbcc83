import io
import logging
import os
import shutil
import sqlite3
import tempfile
import zipfile
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import InvalidName, InvalidValue, MissingField, NotFound
from .schema import check_table_name

logger = logging.getLogger(__name__)

UPLOADS_DIR = Path(os.getenv("UPLOADS_DIR", "./data/uploads"))
UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
UPLOADS_URL = "/uploads"
ZIP_CHUNK = 64 * 1024

# pi_ attachments live under the characterization record they belong to
PI_FOLDER = "inscription_caracterizacion"


def effective_location(table: str, record_id: Any, caracterizacion_id: Any = None) -> Tuple[str, str]:
    if table.startswith("pi_"):
        if caracterizacion_id in (None, ""):
            raise MissingField("El ID de caracterización es requerido para tablas pi_")
        return PI_FOLDER, str(caracterizacion_id)
    return table, str(record_id)


def _safe_segment(value: str) -> str:
    name = os.path.basename(str(value).replace("\\", "/"))
    if not name or name in (".", ".."):
        raise InvalidName(f"Nombre de archivo inválido: {value!r}")
    return name


def _to_url(folder: str, record_id: str, name: str) -> str:
    return f"{UPLOADS_URL}/{folder}/{record_id}/{name}"


def _disk_path(file_path: str) -> Path:
    rel = file_path
    if rel.startswith(UPLOADS_URL + "/"):
        rel = rel[len(UPLOADS_URL) + 1:]
    return UPLOADS_DIR / rel.lstrip("/")


def upload_file(
    con: sqlite3.Connection,
    table: str,
    record_id: Any,
    tmp_path: str,
    original_name: str,
    file_name: Optional[str] = None,
    caracterizacion_id: Any = None,
    source: Optional[str] = None,
) -> Dict[str, Any]:
    try:
        check_table_name(table)
        folder, effective_id = effective_location(table, record_id, caracterizacion_id)
        if not effective_id.isdigit():
            raise InvalidValue(f"ID de registro inválido: {effective_id}")
        ext = os.path.splitext(original_name or "")[1]
        final_name = _safe_segment(f"{file_name}{ext}" if file_name else original_name)

        dest_dir = UPLOADS_DIR / folder / effective_id
        dest_dir.mkdir(parents=True, exist_ok=True)
        # copy next to the destination then swap in: readers never see a partial file
        fd, staging = tempfile.mkstemp(dir=dest_dir, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as out, open(tmp_path, "rb") as src:
                shutil.copyfileobj(src, out)
            os.replace(staging, dest_dir / final_name)
        except BaseException:
            if os.path.exists(staging):
                os.remove(staging)
            raise
    finally:
        if tmp_path and os.path.exists(tmp_path):
            os.remove(tmp_path)

    cur = con.execute(
        "INSERT INTO files(record_id, table_name, name, file_path, source) VALUES (?,?,?,?,?)",
        (int(effective_id), table, final_name, _to_url(folder, effective_id, final_name), source or "unknown"),
    )
    con.commit()
    row = con.execute("SELECT * FROM files WHERE id=?", (cur.lastrowid,)).fetchone()
    logger.info("Archivo %s subido para %s/%s", final_name, table, effective_id)
    return dict(row)


def get_files(
    con: sqlite3.Connection,
    table: str,
    record_id: Any,
    source: Optional[str] = None,
    caracterizacion_id: Any = None,
) -> List[Dict[str, Any]]:
    check_table_name(table)
    if table.startswith("pi_"):
        # lookups fall back to the record id when no characterization is given
        folder, effective_id = PI_FOLDER, str(caracterizacion_id or record_id)
    else:
        folder, effective_id = table, str(record_id)

    q = "SELECT * FROM files WHERE record_id=? AND table_name=?"
    params: List[Any] = [effective_id, table]
    if source:
        q += " AND source=?"
        params.append(source)
    q += " ORDER BY created_at DESC, id DESC"
    rows = con.execute(q, params).fetchall()
    return [
        {
            "id": r["id"],
            "name": r["name"],
            "url": _to_url(folder, effective_id, os.path.basename(r["file_path"])),
            "source": r["source"],
            "cumple": None if r["cumple"] is None else bool(r["cumple"]),
            "descripcion cumplimiento": r["descripcion cumplimiento"],
        }
        for r in rows
    ]


def delete_file(con: sqlite3.Connection, file_id: Any, record_id: Any) -> None:
    row = con.execute(
        "SELECT * FROM files WHERE id=? AND record_id=?", (file_id, record_id)
    ).fetchone()
    if not row:
        raise NotFound("Archivo no encontrado")
    check_table_name(row["table_name"])
    path = _disk_path(row["file_path"])
    if path.exists():
        path.unlink()
    con.execute("DELETE FROM files WHERE id=?", (file_id,))
    con.commit()
    logger.info("Archivo %s eliminado (%s)", file_id, row["file_path"])


def update_file_compliance(
    con: sqlite3.Connection,
    table: str,
    record_id: Any,
    file_id: Any,
    cumple: Any,
    descripcion_cumplimiento: Optional[str] = None,
    caracterizacion_id: Any = None,
) -> None:
    check_table_name(table)
    if cumple is None:
        raise MissingField('El campo "cumple" es requerido')
    effective_id = caracterizacion_id if table.startswith("pi_") and caracterizacion_id else record_id
    cur = con.execute(
        'UPDATE files SET cumple=?, "descripcion cumplimiento"=? '
        "WHERE id=? AND record_id=? AND table_name=?",
        (int(bool(cumple)), descripcion_cumplimiento, file_id, effective_id, table),
    )
    if cur.rowcount == 0:
        raise NotFound("Archivo no encontrado o no pertenece al registro")
    con.commit()


def record_folder(table: str, record_id: Any, caracterizacion_id: Any = None) -> Path:
    if table.startswith("pi_"):
        folder, effective_id = PI_FOLDER, str(caracterizacion_id or record_id)
    else:
        folder, effective_id = table, str(record_id)
    return UPLOADS_DIR / folder / _safe_segment(effective_id)


class _ZipSink(io.RawIOBase):
    """Unseekable buffer; zipfile falls back to data descriptors and never seeks back."""

    def __init__(self):
        super().__init__()
        self._buf = bytearray()

    def writable(self):
        return True

    def write(self, b):
        self._buf.extend(b)
        return len(b)

    def drain(self) -> bytes:
        data = bytes(self._buf)
        self._buf.clear()
        return data


def _members(entries: Iterable[Tuple[Path, str]]) -> Iterator[Tuple[Path, str]]:
    for folder, prefix in entries:
        for path in sorted(folder.rglob("*")):
            if not path.is_file() or path.name.startswith(".upload-"):
                continue
            arcname = path.relative_to(folder).as_posix()
            yield path, f"{prefix}/{arcname}" if prefix else arcname


def iter_zip(entries: Iterable[Tuple[Path, str]], chunk_size: int = ZIP_CHUNK) -> Iterator[bytes]:
    """Yield a deflate archive of ``(folder, arc_prefix)`` pairs as it is written."""
    sink = _ZipSink()
    with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, arcname in _members(entries):
            info = zipfile.ZipInfo.from_file(path, arcname)
            info.compress_type = zipfile.ZIP_DEFLATED
            with open(path, "rb") as src, zf.open(info, "w") as dest:
                while True:
                    block = src.read(chunk_size)
                    if not block:
                        break
                    dest.write(block)
                    data = sink.drain()
                    if data:
                        yield data
            data = sink.drain()
            if data:
                yield data
    # central directory is written on close
    data = sink.drain()
    if data:
        yield data


def write_zip(fileobj: BinaryIO, entries: Iterable[Tuple[Path, str]]) -> int:
    """Write the archive into ``fileobj``; returns the number of files stored."""
    entries = list(entries)
    for chunk in iter_zip(entries):
        fileobj.write(chunk)
    return sum(1 for _ in _members(entries))


def record_zip_entries(table: str, record_id: Any, caracterizacion_id: Any = None) -> List[Tuple[Path, str]]:
    check_table_name(table)
    folder = record_folder(table, record_id, caracterizacion_id)
    if not folder.is_dir():
        raise NotFound("No se encontraron archivos para este ID")
    return [(folder, "")]


def zip_record(fileobj: BinaryIO, table: str, record_id: Any, caracterizacion_id: Any = None) -> int:
    return write_zip(fileobj, record_zip_entries(table, record_id, caracterizacion_id))


def zip_records(fileobj: BinaryIO, tables: List[str], record_ids: List[Any]) -> int:
    return write_zip(fileobj, records_zip_entries(tables, record_ids))


def records_zip_entries(tables: List[str], record_ids: List[Any]) -> List[Tuple[Path, str]]:
    if not isinstance(tables, list) or not isinstance(record_ids, list):
        raise InvalidValue("Las tablas y los IDs deben ser arrays")
    entries = []
    for table in tables:
        for record_id in record_ids:
            try:
                check_table_name(table)
                folder = record_folder(table, record_id)
            except (InvalidName, MissingField):
                logger.warning("Nombre de tabla inválido: %s, se omite", table)
                continue
            if folder.is_dir():
                entries.append((folder, f"{table}/{record_id}"))
            else:
                logger.warning("No se encontraron archivos para %s con ID %s", table, record_id)
    return entries


def purge_attachments(con: sqlite3.Connection, table: str) -> int:
    """Remove every attachment of ``table``: rows, stored files and, outside pi_, its folders."""
    for row in con.execute("SELECT file_path FROM files WHERE table_name=?", (table,)).fetchall():
        path = _disk_path(row["file_path"])
        if path.exists():
            path.unlink()
    cur = con.execute("DELETE FROM files WHERE table_name=?", (table,))
    if not table.startswith("pi_"):
        shutil.rmtree(UPLOADS_DIR / table, ignore_errors=True)
    logger.info("%d adjuntos eliminados de %s", cur.rowcount, table)
    return cur.rowcount
