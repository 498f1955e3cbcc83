import logging
import os
import shutil
import sqlite3
import tempfile
from typing import Any, Dict, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from . import catalog, files, importer, preferences, records, relations, schema
from .db import connect
from .errors import ImpulsoError, InvalidRows
from .schema_sql import SCHEMA_SQL

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="API Impulso Local")

# CORS configurable por variables de entorno
def _parse_csv_env(s: str) -> list:
    parts = [p.strip() for p in (s or "").split(",")]
    return [p for p in parts if p]

_origins_env = os.getenv("ALLOWED_ORIGINS", "*")
_methods_env = os.getenv("CORS_ALLOW_METHODS", "*")
_headers_env = os.getenv("CORS_ALLOW_HEADERS", "*")
_creds_env = os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() in ("1", "true", "yes")

_allow_origins = ["*"] if _origins_env.strip() == "*" else _parse_csv_env(_origins_env)
_allow_methods = ["*"] if _methods_env.strip() == "*" else _parse_csv_env(_methods_env)
_allow_headers = ["*"] if _headers_env.strip() == "*" else _parse_csv_env(_headers_env)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allow_origins,
    allow_credentials=_creds_env,
    allow_methods=_allow_methods,
    allow_headers=_allow_headers,
)

# Archivos subidos (serve /uploads/*)
app.mount(files.UPLOADS_URL, StaticFiles(directory=files.UPLOADS_DIR), name="uploads")

API = "/api/inscriptions"


@app.on_event("startup")
def startup():
    # Ensure base schema
    with connect() as con:
        con.executescript(SCHEMA_SQL)
        con.commit()


@app.exception_handler(ImpulsoError)
async def impulso_error_handler(request: Request, exc: ImpulsoError):
    body: Dict[str, Any] = {"detail": exc.message}
    if isinstance(exc, InvalidRows):
        body["errors"] = exc.errors
    if exc.status_code >= 500:
        logger.error("%s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(sqlite3.Error)
async def sqlite_error_handler(request: Request, exc: sqlite3.Error):
    logger.exception("Error de base de datos en %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": f"Error interno de base de datos: {exc}"})


@app.get("/", response_class=PlainTextResponse)
def index():
    return "API Impulso Local funcionando"


def _save_upload(upload: UploadFile, suffix: str = "") -> str:
    fd, path = tempfile.mkstemp(prefix="impulso-", suffix=suffix)
    try:
        with os.fdopen(fd, "wb") as out:
            shutil.copyfileobj(upload.file, out)
    except Exception:
        os.remove(path)
        raise
    return path


def _zip_response(filename: str, entries) -> StreamingResponse:
    # entries are resolved before the first byte so lookup errors still map to a status
    return StreamingResponse(
        files.iter_zip(entries),
        media_type="application/zip",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# ---------------------- Tablas ----------------------
@app.post(f"{API}/create-table", status_code=201)
def create_table(payload: Dict[str, Any]):
    table_name = payload.get("table_name")
    with connect() as con:
        schema.create_table(con, table_name, payload.get("fields") or [])
    return {"message": f"Tabla {table_name} creada con éxito"}


@app.get(f"{API}/tables")
def list_tables(tableType: Optional[str] = None, isPrimary: Optional[str] = None):
    with connect() as con:
        return schema.list_tables(con, tableType, is_primary_only=(isPrimary == "true"))


@app.delete(f"{API}/tables/{{table_name}}")
def delete_table(table_name: str):
    with connect() as con:
        schema.delete_table(con, table_name)
    return {"message": f"Tabla {table_name} eliminada con éxito"}


@app.put(f"{API}/tables/{{table_name}}")
def edit_table(table_name: str, payload: Dict[str, Any]):
    with connect() as con:
        schema.edit_table(
            con,
            table_name,
            fields_to_add=payload.get("fieldsToAdd"),
            fields_to_delete=payload.get("fieldsToDelete"),
            fields_to_edit=payload.get("fieldsToEdit"),
        )
    return {"message": f'Tabla "{table_name}" actualizada con éxito'}


@app.put(f"{API}/tables/{{table_name}}/principal")
def update_principal_status(table_name: str, payload: Dict[str, Any]):
    with connect() as con:
        schema.update_principal_status(con, table_name, payload.get("is_primary"))
    return {"message": f"Estado de principal actualizado para {table_name}"}


@app.get(f"{API}/tables/{{table_name}}/fields")
def get_table_fields(table_name: str):
    with connect() as con:
        return catalog.table_fields(con, table_name)


@app.get(f"{API}/tables/{{table_name}}/related-data")
def get_related_data(table_name: str):
    schema.check_table_name(table_name)
    with connect() as con:
        return {"relatedData": relations.related_data(con, table_name)}


@app.get(f"{API}/tables/{{table_name}}/fields/{{field_name}}/options")
def get_field_options(table_name: str, field_name: str):
    with connect() as con:
        return {"options": relations.field_options(con, table_name, field_name)}


@app.post(f"{API}/tables/{{table_name}}/validate")
def validate_field(table_name: str, payload: Dict[str, Any]):
    field_name = payload.get("fieldName")
    if not field_name:
        raise HTTPException(status_code=400, detail="fieldName es requerido")
    with connect() as con:
        return {"exists": records.value_exists(con, table_name, field_name, payload.get("fieldValue"))}


# ---------------------- CSV ----------------------
@app.get(f"{API}/tables/{{table_name}}/csv-template")
def download_csv_template(table_name: str):
    with connect() as con:
        content = importer.csv_template(con, table_name)
    return _csv_response(content, f"{table_name}_template.csv")


@app.get(f"{API}/tables/{{table_name}}/download-csv")
def download_csv_data(table_name: str):
    with connect() as con:
        content = importer.csv_export(con, table_name)
    return _csv_response(content, f"{table_name}_data.csv")


@app.post(f"{API}/tables/{{table_name}}/upload-csv", status_code=201)
def upload_csv(table_name: str, file: UploadFile = File(...)):
    path = _save_upload(file, suffix=".csv")
    with connect() as con:
        result = importer.import_csv(con, table_name, path)
    return {"message": "Datos insertados con éxito en la tabla", **result}


# ---------------------- Registros ----------------------
@app.get(f"{API}/tables/{{table_name}}/records")
def get_table_records(table_name: str, request: Request):
    with connect() as con:
        return records.list_records(con, table_name, dict(request.query_params))


@app.post(f"{API}/tables/{{table_name}}/records", status_code=201)
def add_record(table_name: str, payload: Dict[str, Any]):
    with connect() as con:
        record = records.create_record(con, table_name, payload)
    return {"message": "Registro añadido con éxito", "newRecord": record}


@app.get(f"{API}/tables/{{table_name}}/records/{{record_id}}")
def get_table_record_by_id(table_name: str, record_id: int):
    with connect() as con:
        return records.get_record_by_id(con, table_name, record_id)


@app.put(f"{API}/tables/{{table_name}}/records/{{record_id}}")
def update_table_record(table_name: str, record_id: int, payload: Dict[str, Any]):
    with connect() as con:
        record = records.update_table_record(con, table_name, record_id, payload)
    return {"message": "Registro actualizado con éxito", "record": record}


@app.delete(f"{API}/tables/{{table_name}}/records/{{record_id}}")
def delete_table_record(table_name: str, record_id: int):
    with connect() as con:
        records.delete_record(con, table_name, record_id)
    return {"message": "Registro eliminado con éxito"}


@app.put(f"{API}/tables/{{table_name}}/bulk-update")
def bulk_update_records(table_name: str, payload: Dict[str, Any]):
    with connect() as con:
        updated = records.bulk_update(con, table_name, payload.get("recordIds"), payload.get("updates") or {})
    return {"message": "Registros actualizados con éxito", "updated": updated}


@app.put(f"{API}/pi/tables/{{table_name}}/records/{{record_id}}")
def update_pi_record(table_name: str, record_id: int, payload: Dict[str, Any]):
    with connect() as con:
        record = records.update_pi_record(con, table_name, record_id, payload)
    return {"message": "Registro actualizado con éxito", "record": record}


@app.post(f"{API}/pi/tables/{{table_name}}/records")
def create_pi_record(table_name: str, payload: Dict[str, Any], response: Response):
    with connect() as con:
        record, created = records.create_or_update_by_natural_key(con, table_name, payload)
    if created:
        response.status_code = 201
        return {"message": "Registro creado con éxito", "record": record}
    return {"message": "Registro actualizado con éxito", "record": record}


@app.post(f"{API}/caracterizacion", status_code=201)
def create_caracterizacion(payload: Dict[str, Any]):
    with connect() as con:
        record = records.create_caracterizacion(con, payload)
    return {"message": "Registro creado exitosamente", "id": record["id"]}


@app.get(f"{API}/caracterizacion/active")
def get_active_caracterizacion_records():
    with connect() as con:
        return records.active_caracterizacion_records(con)


# ---------------------- Archivos ----------------------
@app.post(f"{API}/tables/{{table_name}}/record/{{record_id}}/upload")
def upload_file(
    table_name: str,
    record_id: int,
    file: UploadFile = File(...),
    fileName: Optional[str] = Form(None),
    caracterizacion_id: Optional[int] = Form(None),
    source: Optional[str] = Form(None),
):
    path = _save_upload(file)
    with connect() as con:
        row = files.upload_file(
            con,
            table_name,
            record_id,
            path,
            file.filename or "archivo",
            file_name=fileName,
            caracterizacion_id=caracterizacion_id,
            source=source,
        )
    return {"message": "Archivo subido exitosamente", "file": row}


@app.get(f"{API}/tables/{{table_name}}/record/{{record_id}}/files")
def get_files(
    table_name: str,
    record_id: int,
    source: Optional[str] = None,
    caracterizacion_id: Optional[int] = None,
):
    with connect() as con:
        return {"files": files.get_files(con, table_name, record_id, source, caracterizacion_id)}


@app.delete(f"{API}/tables/{{table_name}}/record/{{record_id}}/file/{{file_id}}")
def delete_file(table_name: str, record_id: int, file_id: int):
    with connect() as con:
        files.delete_file(con, file_id, record_id)
    return {"message": "Archivo eliminado correctamente"}


@app.put(f"{API}/tables/{{table_name}}/record/{{record_id}}/file/{{file_id}}/compliance")
def update_file_compliance(table_name: str, record_id: int, file_id: int, payload: Dict[str, Any]):
    with connect() as con:
        files.update_file_compliance(
            con,
            table_name,
            record_id,
            file_id,
            payload.get("cumple"),
            payload.get("descripcion_cumplimiento"),
            caracterizacion_id=payload.get("caracterizacion_id"),
        )
    return {"message": "Estado de cumplimiento actualizado correctamente"}


@app.get(f"{API}/tables/{{table_name}}/record/{{record_id}}/download-zip")
def download_zip(table_name: str, record_id: int, caracterizacion_id: Optional[int] = None):
    return _zip_response(
        f"{table_name}_{record_id}_archivos.zip",
        files.record_zip_entries(table_name, record_id, caracterizacion_id),
    )


@app.post(f"{API}/download-multiple-zip")
def download_multiple_zip(payload: Dict[str, Any]):
    return _zip_response(
        "archivos_seleccionados.zip",
        files.records_zip_entries(payload.get("tables"), payload.get("recordIds")),
    )


# ---------------------- Preferencias ----------------------
@app.post(f"{API}/tables/{{table_name}}/field-preferences")
def save_field_preferences(table_name: str, payload: Dict[str, Any]):
    with connect() as con:
        preferences.save_field_preferences(con, table_name, payload.get("visible_columns"))
    return {"message": "Preferencias de columnas guardadas exitosamente"}


@app.get(f"{API}/tables/{{table_name}}/field-preferences")
def get_field_preferences(table_name: str):
    with connect() as con:
        return {"visible_columns": preferences.get_field_preferences(con, table_name)}
