from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from functools import partial
import gzip
import hashlib
import json
import os
from pathlib import Path
import shutil
import subprocess
from typing import Any, Callable, Protocol, Sequence

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from sqlalchemy.engine import make_url

from aquaschema.core.config import get_settings
from aquaschema.core.errors import ExecutionFailureError
from aquaschema.domain.models import SchemaBackup
from aquaschema.persistence.guards import require_schema_name
from aquaschema.persistence.sql import SchemaTransaction, SqlRunner, get_sql_runner


# Simulated gzip ratio reported by the catalog transport for compressed captures.
SIMULATED_COMPRESSION_RATIO = 0.3

DumpRunner = Callable[[str, Path, str, Sequence[str]], None]
RestoreRunner = Callable[[Path, str], None]


@dataclass(frozen=True)
class BackupRequest:
    # Everything a transport needs to capture one schema.
    backup_id: str
    schema_name: str
    backup_type: str
    file_name: str
    file_path: str
    compress: bool = True
    encrypt: bool = False
    exclude_tables: tuple[str, ...] = ()


@dataclass(frozen=True)
class BackupCapture:
    size_bytes: int
    checksum: str
    metadata: dict[str, Any] = field(default_factory=dict)


class BackupTransport(Protocol):
    # Capture, restore, and verify schema backups behind one interface.
    async def capture(self, request: BackupRequest) -> BackupCapture:
        ...

    async def restore(
        self,
        backup: SchemaBackup,
        *,
        target_schema: str,
        tables: list[str] | None = None,
    ) -> list[str]:
        ...

    async def verify(self, backup: SchemaBackup) -> list[str]:
        ...


async def _list_tables(
    tx: SchemaTransaction, schema_name: str, exclude: Sequence[str] = ()
) -> list[dict[str, Any]]:
    # Read table, column, and live row estimates from the catalog in one pass per view.
    excluded = set(exclude)
    table_rows = await tx.fetch_all(
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = :schema AND table_type = 'BASE TABLE' "
        "ORDER BY table_name",
        {"schema": schema_name},
    )
    column_rows = await tx.fetch_all(
        "SELECT table_name, column_name, data_type FROM information_schema.columns "
        "WHERE table_schema = :schema ORDER BY table_name, ordinal_position",
        {"schema": schema_name},
    )
    count_rows = await tx.fetch_all(
        "SELECT relname AS table_name, n_live_tup AS row_count FROM pg_stat_user_tables "
        "WHERE schemaname = :schema",
        {"schema": schema_name},
    )
    columns: dict[str, list[dict[str, str]]] = {}
    for row in column_rows:
        columns.setdefault(row["table_name"], []).append(
            {"name": row["column_name"], "type": row["data_type"]}
        )
    counts = {row["table_name"]: int(row["row_count"] or 0) for row in count_rows}
    return [
        {
            "name": row["table_name"],
            "row_count": counts.get(row["table_name"], 0),
            "columns": columns.get(row["table_name"], []),
        }
        for row in table_rows
        if row["table_name"] not in excluded
    ]


def _capture_metadata(tables: list[dict[str, Any]], *, compression_ratio: float | None) -> dict[str, Any]:
    return {
        "table_count": len(tables),
        "row_count": sum(table["row_count"] for table in tables),
        "tables": [table["name"] for table in tables],
        "compression_ratio": compression_ratio,
    }


@dataclass(frozen=True)
class CatalogBackupTransport:
    """Catalog snapshot transport.

    Captures a deterministic JSON description of the schema (tables, columns,
    row estimates) instead of table data. Sizes are simulated from the payload
    length, which keeps size limits and checksums meaningful without shipping
    dump files around.
    """

    sql_runner: SqlRunner

    async def capture(self, request: BackupRequest) -> BackupCapture:
        async with self.sql_runner.transaction(request.schema_name, commit=False) as tx:
            tables = await _list_tables(tx, request.schema_name, request.exclude_tables)
        payload = json.dumps(
            {
                "schema": request.schema_name,
                "backup_type": request.backup_type,
                "tables": tables,
            },
            separators=(",", ":"),
            sort_keys=True,
        ).encode("utf-8")
        ratio = SIMULATED_COMPRESSION_RATIO if request.compress else 1.0
        return BackupCapture(
            size_bytes=int(len(payload) * ratio),
            checksum=hashlib.sha256(payload).hexdigest(),
            metadata=_capture_metadata(tables, compression_ratio=ratio),
        )

    async def restore(
        self,
        backup: SchemaBackup,
        *,
        target_schema: str,
        tables: list[str] | None = None,
    ) -> list[str]:
        if tables is None:
            tables = list((backup.metadata_json or {}).get("tables", []))
        # Open the target transaction so an unreachable or invalid schema fails the restore.
        async with self.sql_runner.transaction(target_schema) as tx:
            await tx.execute("SELECT 1")
        return list(tables)

    async def verify(self, backup: SchemaBackup) -> list[str]:
        if not backup.checksum:
            return ["Backup checksum missing"]
        return []


_CHUNK_BYTES = 1024 * 1024


def artifact_checksum(path: Path) -> str:
    # SHA-256 over the artifact exactly as stored, after compression and encryption.
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(partial(handle.read, _CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class ArtifactCipher:
    """Streaming AES-GCM for dump artifacts.

    Sealed layout is ``nonce (12) || ciphertext || tag (16)``. Both directions
    stream in 1 MiB chunks.
    """

    key: bytes

    NONCE_BYTES = 12
    TAG_BYTES = 16

    @classmethod
    def from_settings(cls) -> "ArtifactCipher":
        raw = (get_settings().backup_encryption_key or "").strip()
        if not raw:
            raise ValueError("BACKUP_ENCRYPTION_KEY is required when encryption is enabled")
        try:
            key = bytes.fromhex(raw)
        except ValueError:
            key = base64.b64decode(raw)
        if len(key) * 8 not in {128, 192, 256}:
            raise ValueError("BACKUP_ENCRYPTION_KEY must be a 128, 192 or 256-bit key")
        return cls(key)

    def seal(self, source: Path, destination: Path) -> None:
        nonce = os.urandom(self.NONCE_BYTES)
        encryptor = Cipher(algorithms.AES(self.key), modes.GCM(nonce)).encryptor()
        with source.open("rb") as plain, destination.open("wb") as sealed:
            sealed.write(nonce)
            for chunk in iter(partial(plain.read, _CHUNK_BYTES), b""):
                sealed.write(encryptor.update(chunk))
            sealed.write(encryptor.finalize() + encryptor.tag)

    def unseal(self, source: Path, destination: Path) -> None:
        body_bytes = source.stat().st_size - self.NONCE_BYTES - self.TAG_BYTES
        if body_bytes < 0:
            raise ValueError("Encrypted artifact is too small to contain nonce and tag")
        with source.open("rb") as sealed:
            nonce = sealed.read(self.NONCE_BYTES)
            sealed.seek(-self.TAG_BYTES, os.SEEK_END)
            tag = sealed.read(self.TAG_BYTES)
            sealed.seek(self.NONCE_BYTES)
            decryptor = Cipher(algorithms.AES(self.key), modes.GCM(nonce, tag)).decryptor()
            with destination.open("wb") as plain:
                while body_bytes > 0:
                    chunk = sealed.read(min(_CHUNK_BYTES, body_bytes))
                    if not chunk:
                        break
                    body_bytes -= len(chunk)
                    plain.write(decryptor.update(chunk))
                # Raises InvalidTag when the artifact or key does not match.
                plain.write(decryptor.finalize())


def _libpq_url(db_url: str) -> str:
    # pg_dump and psql speak libpq URLs, not SQLAlchemy driver URLs.
    parsed = make_url(db_url)
    if "+" in parsed.drivername:
        parsed = parsed.set(drivername=parsed.drivername.split("+", 1)[0])
    return parsed.render_as_string(hide_password=False)


def _default_dump_runner(
    schema_name: str, output_path: Path, db_url: str, exclude_tables: Sequence[str]
) -> None:
    args = [
        "pg_dump",
        "--no-owner",
        "--no-privileges",
        # Drop-before-create so the dump replays over a live tenant schema.
        "--clean",
        "--if-exists",
        f"--schema={schema_name}",
    ]
    args.extend(f"--exclude-table={schema_name}.{table}" for table in exclude_tables)
    args.append(_libpq_url(db_url))
    with subprocess.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE) as proc:
        if proc.stdout is None:
            raise ExecutionFailureError("pg_dump produced no stdout stream")
        with output_path.open("wb") as handle:
            shutil.copyfileobj(proc.stdout, handle)
        stderr = proc.stderr.read() if proc.stderr else b""
    if proc.returncode != 0:
        raise ExecutionFailureError(f"pg_dump failed: {stderr.decode('utf-8', errors='ignore')}")


def _default_restore_runner(sql_path: Path, db_url: str) -> None:
    with sql_path.open("rb") as handle:
        process = subprocess.Popen(
            ["psql", "--single-transaction", "--set", "ON_ERROR_STOP=1", _libpq_url(db_url)],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        _stdout, stderr = process.communicate(handle.read())
    if process.returncode != 0:
        raise ExecutionFailureError(f"psql failed: {stderr.decode('utf-8', errors='ignore')}")


def get_dump_runner() -> DumpRunner:
    # Allow tests to monkeypatch dump behavior without shelling out.
    return _default_dump_runner


def get_restore_runner() -> RestoreRunner:
    return _default_restore_runner


@dataclass(frozen=True)
class PgDumpBackupTransport:
    """Logical dumps through ``pg_dump``/``psql`` stored on the local filesystem.

    Artifacts are optionally gzip-compressed and AES-GCM encrypted; the
    checksum always covers the final artifact bytes on disk.
    """

    database_url: str
    local_dir: Path
    sql_runner: SqlRunner | None = None

    def artifact_path(self, schema_name: str, file_name: str) -> Path:
        return self.local_dir / require_schema_name(schema_name) / file_name

    def _write_artifact(self, request: BackupRequest) -> Path:
        target = self.artifact_path(request.schema_name, request.file_name)
        target.parent.mkdir(parents=True, exist_ok=True)
        raw_path = target.with_name(target.name + ".raw")
        get_dump_runner()(request.schema_name, raw_path, self.database_url, request.exclude_tables)
        current = raw_path
        if request.compress:
            compressed = target.with_name(target.name + ".gz.tmp")
            with raw_path.open("rb") as source, gzip.open(compressed, "wb") as sink:
                shutil.copyfileobj(source, sink)
            raw_path.unlink(missing_ok=True)
            current = compressed
        if request.encrypt:
            encrypted = target.with_name(target.name + ".enc.tmp")
            ArtifactCipher.from_settings().seal(current, encrypted)
            current.unlink(missing_ok=True)
            current = encrypted
        current.replace(target)
        return target

    async def capture(self, request: BackupRequest) -> BackupCapture:
        tables: list[dict[str, Any]] = []
        if self.sql_runner is not None:
            async with self.sql_runner.transaction(request.schema_name, commit=False) as tx:
                tables = await _list_tables(tx, request.schema_name, request.exclude_tables)
        artifact = await asyncio.to_thread(self._write_artifact, request)
        return BackupCapture(
            size_bytes=artifact.stat().st_size,
            checksum=artifact_checksum(artifact),
            metadata={
                **_capture_metadata(tables, compression_ratio=None),
                "artifact_path": str(artifact),
            },
        )

    def _restore_artifact(self, backup: SchemaBackup) -> None:
        artifact = self.artifact_path(backup.schema_name, backup.file_name)
        staged = artifact
        scratch: list[Path] = []
        try:
            if backup.is_encrypted:
                decrypted = artifact.with_name(artifact.name + ".dec.tmp")
                ArtifactCipher.from_settings().unseal(staged, decrypted)
                scratch.append(decrypted)
                staged = decrypted
            if backup.is_compressed:
                plain = artifact.with_name(artifact.name + ".sql.tmp")
                with gzip.open(staged, "rb") as source, plain.open("wb") as sink:
                    shutil.copyfileobj(source, sink)
                scratch.append(plain)
                staged = plain
            get_restore_runner()(staged, self.database_url)
        finally:
            for path in scratch:
                path.unlink(missing_ok=True)

    async def restore(
        self,
        backup: SchemaBackup,
        *,
        target_schema: str,
        tables: list[str] | None = None,
    ) -> list[str]:
        # Plain pg_dump output is schema-qualified, so it can only land back in its source schema.
        if target_schema != backup.schema_name:
            raise ValueError("pg_dump artifacts can only be restored into their source schema")
        captured = list((backup.metadata_json or {}).get("tables", []))
        if tables is not None and sorted(tables) != sorted(captured):
            raise ValueError("pg_dump artifacts restore whole schemas; table subsets are not supported")
        await asyncio.to_thread(self._restore_artifact, backup)
        return captured

    async def verify(self, backup: SchemaBackup) -> list[str]:
        errors: list[str] = []
        if not backup.checksum:
            errors.append("Backup checksum missing")
        artifact = self.artifact_path(backup.schema_name, backup.file_name)
        if not artifact.exists():
            errors.append(f"missing artifact: {artifact.name}")
            return errors
        if backup.checksum and artifact_checksum(artifact) != backup.checksum:
            errors.append(f"checksum mismatch: {artifact.name}")
        return errors


def get_backup_transport() -> BackupTransport:
    settings = get_settings()
    if settings.backup_transport == "pg_dump":
        return PgDumpBackupTransport(
            database_url=settings.database_url,
            local_dir=Path(settings.backup_local_dir),
            sql_runner=get_sql_runner(),
        )
    if settings.backup_transport == "catalog":
        return CatalogBackupTransport(get_sql_runner())
    raise ValueError(f"Unknown backup transport: {settings.backup_transport}")
