SCHEMA_SQL = '''
-- Registro de tablas dinámicas (independiente del catálogo vivo)
CREATE TABLE IF NOT EXISTS tables_metadata (
    id INTEGER PRIMARY KEY,
    table_name TEXT NOT NULL UNIQUE,
    is_primary INTEGER NOT NULL DEFAULT 0 CHECK (is_primary IN (0,1)),
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Archivos adjuntos: relación por convención (table_name, record_id), sin FK
CREATE TABLE IF NOT EXISTS files (
    id INTEGER PRIMARY KEY,
    record_id INTEGER NOT NULL,
    table_name TEXT NOT NULL,
    name TEXT NOT NULL,
    file_path TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'unknown',
    cumple INTEGER CHECK (cumple IN (0,1) OR cumple IS NULL),
    "descripcion cumplimiento" TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Preferencias de columnas visibles, una fila por tabla
CREATE TABLE IF NOT EXISTS field_preferences (
    id INTEGER PRIMARY KEY,
    table_name TEXT NOT NULL UNIQUE,
    visible_columns TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_files_record ON files(table_name, record_id);
CREATE INDEX IF NOT EXISTS idx_files_source ON files(source);
''';
