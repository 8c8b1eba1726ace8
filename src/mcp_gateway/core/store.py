"""
SQLite persistence for MCP Gateway.

Handles schema creation, connection management and the lookups the
authenticator, resolver and gateway depend on. Every operation opens its own
short-lived connection.
"""

import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

from mcp_gateway.core.exceptions import NotFound, ValidationError
from mcp_gateway.core.models import (
    ALL_CAPABILITY_KINDS,
    ApiCredential,
    CapabilityKind,
    Connection,
    ConnectionParams,
    ConnectionSource,
    ConnectionStatus,
    ConnectionType,
    DiscoveredCapability,
    EncryptedField,
    EncryptedParams,
    Profile,
    Project,
    utcnow,
)
from mcp_gateway.core.vault import CredentialVault
from mcp_gateway.utils.config import get_config
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

SCHEMA_TABLES = ("projects", "profiles", "connections", "capabilities", "api_keys")


class GatewayStore:
    """Manages database operations for projects, profiles, connections and keys."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize database manager."""
        raw_path = db_path or get_config().database_path
        self.db_path = Path(raw_path) if isinstance(raw_path, str) else raw_path
        self._ensure_database()

    def _ensure_database(self):
        """Ensure database exists and has required tables."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            with sqlite3.connect(self.db_path) as conn:
                conn.execute("PRAGMA foreign_keys = ON")

                cursor = conn.execute(
                    f"""
                    SELECT name FROM sqlite_master
                    WHERE type='table' AND name IN ({",".join("?" * len(SCHEMA_TABLES))})
                    """,
                    SCHEMA_TABLES,
                )
                existing_tables = {row[0] for row in cursor.fetchall()}

                if existing_tables != set(SCHEMA_TABLES):
                    logger.info("Creating gateway tables", extra={"db_path": str(self.db_path)})
                    self._create_tables(conn)

        except sqlite3.Error as e:
            logger.error(f"Failed to ensure gateway database: {e}")
            raise

    def _create_tables(self, conn: sqlite3.Connection):
        """Create gateway tables."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS projects (
                uuid TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                active_profile_uuid TEXT,
                created_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                uuid TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                project_uuid TEXT NOT NULL,
                enabled_capabilities TEXT NOT NULL,  -- JSON list of kinds
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_uuid) REFERENCES projects(uuid) ON DELETE CASCADE
            )
        """)

        # created_seq fixes creation order for tie-breaks
        conn.execute("""
            CREATE TABLE IF NOT EXISTS connections (
                created_seq INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT NOT NULL UNIQUE,
                profile_uuid TEXT NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                command_encrypted TEXT,
                args_encrypted TEXT,
                env_encrypted TEXT,
                url_encrypted TEXT,
                source TEXT NOT NULL,
                external_id TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (profile_uuid) REFERENCES profiles(uuid) ON DELETE CASCADE
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS capabilities (
                created_seq INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT NOT NULL UNIQUE,
                connection_uuid TEXT NOT NULL,
                kind TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                definition TEXT,  -- JSON schema or metadata
                active INTEGER NOT NULL DEFAULT 1,
                FOREIGN KEY (connection_uuid) REFERENCES connections(uuid) ON DELETE CASCADE,
                UNIQUE(connection_uuid, kind, name)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS api_keys (
                uuid TEXT PRIMARY KEY,
                project_uuid TEXT NOT NULL,
                name TEXT NOT NULL,
                key_id TEXT NOT NULL UNIQUE,
                salt TEXT NOT NULL,
                key_hash TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_uuid) REFERENCES projects(uuid) ON DELETE CASCADE
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_profiles_project ON profiles(project_uuid)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_connections_profile ON connections(profile_uuid)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_capabilities_lookup ON capabilities(kind, name)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_project ON api_keys(project_uuid)")

        conn.commit()
        logger.info("Gateway tables created successfully")

    def get_connection(self) -> sqlite3.Connection:
        """Get a database connection with proper configuration."""
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def get_row_connection(self) -> sqlite3.Connection:
        """Get a database connection configured for row access."""
        conn = self.get_connection()
        conn.row_factory = sqlite3.Row
        return conn

    def _fetch_one(self, query: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        rows = self._fetch_all(query, params)
        return rows[0] if rows else None

    def _fetch_all(self, query: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        conn = self.get_row_connection()
        try:
            return conn.execute(query, tuple(params)).fetchall()
        finally:
            conn.close()

    def _execute(self, query: str, params: Iterable[Any] = ()) -> int:
        """Run a write statement and return the affected row count."""
        conn = self.get_connection()
        try:
            with conn:
                cursor = conn.execute(query, tuple(params))
            return cursor.rowcount
        finally:
            conn.close()

    # Projects

    def create_project(self, name: str) -> Project:
        project = Project(uuid=str(uuid.uuid4()), name=name)
        self._execute(
            "INSERT INTO projects (uuid, name, active_profile_uuid, created_at) VALUES (?, ?, ?, ?)",
            (project.uuid, project.name, None, project.created_at.isoformat()),
        )
        logger.info(f"Created project '{name}'", extra={"project_uuid": project.uuid})
        return project

    def get_project(self, project_uuid: str) -> Optional[Project]:
        row = self._fetch_one("SELECT * FROM projects WHERE uuid = ?", (project_uuid,))
        return self._row_to_project(row) if row else None

    def list_projects(self) -> List[Project]:
        rows = self._fetch_all("SELECT * FROM projects ORDER BY created_at, uuid")
        return [self._row_to_project(row) for row in rows]

    def set_active_profile(self, project_uuid: str, profile_uuid: Optional[str]) -> None:
        """Point a project at one of its profiles, or at none."""
        if profile_uuid is not None:
            profile = self.get_profile(profile_uuid)
            if profile is None or profile.project_uuid != project_uuid:
                raise NotFound(f"Profile {profile_uuid} not found in project {project_uuid}")
        updated = self._execute(
            "UPDATE projects SET active_profile_uuid = ? WHERE uuid = ?",
            (profile_uuid, project_uuid),
        )
        if not updated:
            raise NotFound(f"Project {project_uuid} not found")

    # Profiles

    def create_profile(
        self,
        project_uuid: str,
        name: str,
        enabled_capabilities: Optional[List[CapabilityKind]] = None,
        make_active: bool = True,
    ) -> Profile:
        """
        Create a profile under a project.

        Args:
            project_uuid: Owning project
            name: Profile name
            enabled_capabilities: Capability kinds exposed; defaults to all
            make_active: Also make it the project's active profile
        """
        if self.get_project(project_uuid) is None:
            raise NotFound(f"Project {project_uuid} not found")

        profile = Profile(
            uuid=str(uuid.uuid4()),
            name=name,
            project_uuid=project_uuid,
            enabled_capabilities=(
                enabled_capabilities if enabled_capabilities is not None
                else list(ALL_CAPABILITY_KINDS)
            ),
        )
        self._execute(
            """
            INSERT INTO profiles (uuid, name, project_uuid, enabled_capabilities, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                profile.uuid,
                profile.name,
                profile.project_uuid,
                json.dumps([k.value for k in profile.enabled_capabilities]),
                profile.created_at.isoformat(),
            ),
        )
        if make_active:
            self.set_active_profile(project_uuid, profile.uuid)

        logger.info(f"Created profile '{name}'",
                    extra={"profile_uuid": profile.uuid, "project_uuid": project_uuid})
        return profile

    def get_profile(self, profile_uuid: str) -> Optional[Profile]:
        row = self._fetch_one("SELECT * FROM profiles WHERE uuid = ?", (profile_uuid,))
        return self._row_to_profile(row) if row else None

    def get_active_profile(self, project_uuid: str) -> Optional[Profile]:
        """Profile a project's API keys currently resolve against."""
        row = self._fetch_one(
            """
            SELECT p.* FROM profiles p
            JOIN projects pr ON pr.active_profile_uuid = p.uuid
            WHERE pr.uuid = ?
            """,
            (project_uuid,),
        )
        return self._row_to_profile(row) if row else None

    def list_profiles(self, project_uuid: str) -> List[Profile]:
        rows = self._fetch_all(
            "SELECT * FROM profiles WHERE project_uuid = ? ORDER BY created_at, uuid",
            (project_uuid,),
        )
        return [self._row_to_profile(row) for row in rows]

    def set_enabled_capabilities(
        self, profile_uuid: str, kinds: List[CapabilityKind]
    ) -> Profile:
        profile = self.get_profile(profile_uuid)
        if profile is None:
            raise NotFound(f"Profile {profile_uuid} not found")
        profile = Profile(**{**profile.model_dump(), "enabled_capabilities": kinds})
        self._execute(
            "UPDATE profiles SET enabled_capabilities = ? WHERE uuid = ?",
            (json.dumps([k.value for k in profile.enabled_capabilities]), profile_uuid),
        )
        return profile

    def delete_profile(self, profile_uuid: str) -> bool:
        """Delete a profile with its connections and capabilities."""
        conn = self.get_connection()
        try:
            with conn:
                conn.execute(
                    "UPDATE projects SET active_profile_uuid = NULL WHERE active_profile_uuid = ?",
                    (profile_uuid,),
                )
                cursor = conn.execute("DELETE FROM profiles WHERE uuid = ?", (profile_uuid,))
            deleted = cursor.rowcount > 0
        finally:
            conn.close()

        if deleted:
            logger.info("Deleted profile", extra={"profile_uuid": profile_uuid})
        return deleted

    # Connections

    def add_connection(
        self,
        profile_uuid: str,
        name: str,
        params: EncryptedParams,
        type: ConnectionType = ConnectionType.STDIO,
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
        source: ConnectionSource = ConnectionSource.SELF,
        external_id: Optional[str] = None,
    ) -> Connection:
        """Register a connection whose parameters are already encrypted."""
        if self.get_profile(profile_uuid) is None:
            raise NotFound(f"Profile {profile_uuid} not found")

        connection_uuid = str(uuid.uuid4())
        created_at = utcnow()
        conn = self.get_connection()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO connections (
                        uuid, profile_uuid, name, type, status,
                        command_encrypted, args_encrypted, env_encrypted, url_encrypted,
                        source, external_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        connection_uuid,
                        profile_uuid,
                        name,
                        ConnectionType(type).value,
                        ConnectionStatus(status).value,
                        params.command.ciphertext,
                        params.args.ciphertext,
                        params.env.ciphertext,
                        params.url.ciphertext,
                        ConnectionSource(source).value,
                        external_id,
                        created_at.isoformat(),
                    ),
                )
        finally:
            conn.close()

        logger.info(f"Registered connection '{name}'",
                    extra={"connection_uuid": connection_uuid, "profile_uuid": profile_uuid})
        connection = self.get_connection_record(connection_uuid)
        if connection is None:
            raise NotFound(f"Connection {connection_uuid} not found")
        return connection

    def register_connection(
        self,
        vault: CredentialVault,
        profile_uuid: str,
        name: str,
        params: ConnectionParams,
        **kwargs: Any,
    ) -> Connection:
        """Encrypt plaintext parameters through the vault and register them."""
        return self.add_connection(
            profile_uuid, name, vault.encrypt(profile_uuid, params), **kwargs
        )

    def get_connection_record(self, connection_uuid: str) -> Optional[Connection]:
        row = self._fetch_one("SELECT * FROM connections WHERE uuid = ?", (connection_uuid,))
        return self._row_to_connection(row) if row else None

    def list_connections(self, profile_uuid: str, active_only: bool = False) -> List[Connection]:
        query = "SELECT * FROM connections WHERE profile_uuid = ?"
        params: List[Any] = [profile_uuid]
        if active_only:
            query += " AND status = ?"
            params.append(ConnectionStatus.ACTIVE.value)
        query += " ORDER BY created_seq"
        return [self._row_to_connection(row) for row in self._fetch_all(query, params)]

    def update_connection_params(self, connection_uuid: str, params: EncryptedParams) -> Connection:
        """Rewrite every encrypted column of a connection."""
        updated = self._execute(
            """
            UPDATE connections
            SET command_encrypted = ?, args_encrypted = ?, env_encrypted = ?, url_encrypted = ?
            WHERE uuid = ?
            """,
            (
                params.command.ciphertext,
                params.args.ciphertext,
                params.env.ciphertext,
                params.url.ciphertext,
                connection_uuid,
            ),
        )
        if not updated:
            raise NotFound(f"Connection {connection_uuid} not found")
        connection = self.get_connection_record(connection_uuid)
        if connection is None:
            raise NotFound(f"Connection {connection_uuid} not found")
        return connection

    def set_connection_status(self, connection_uuid: str, status: ConnectionStatus) -> None:
        updated = self._execute(
            "UPDATE connections SET status = ? WHERE uuid = ?",
            (ConnectionStatus(status).value, connection_uuid),
        )
        if not updated:
            raise NotFound(f"Connection {connection_uuid} not found")
        logger.info(f"Connection status set to {ConnectionStatus(status).value}",
                    extra={"connection_uuid": connection_uuid})

    def delete_connection(self, connection_uuid: str) -> bool:
        """Delete a connection and its capabilities."""
        deleted = self._execute("DELETE FROM connections WHERE uuid = ?", (connection_uuid,)) > 0
        if deleted:
            logger.info("Deleted connection", extra={"connection_uuid": connection_uuid})
        return deleted

    # Capabilities

    def add_capability(
        self,
        connection_uuid: str,
        kind: CapabilityKind,
        name: str,
        description: Optional[str] = None,
        definition: Any = None,
        active: bool = True,
    ) -> DiscoveredCapability:
        """Record a capability a connection declares."""
        capability = DiscoveredCapability(
            uuid=str(uuid.uuid4()),
            connection_uuid=connection_uuid,
            kind=kind,
            name=name,
            description=description,
            definition=definition,
            active=active,
        )
        if self.get_connection_record(connection_uuid) is None:
            raise NotFound(f"Connection {connection_uuid} not found")

        try:
            self._execute(
                """
                INSERT INTO capabilities (
                    uuid, connection_uuid, kind, name, description, definition, active
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    capability.uuid,
                    connection_uuid,
                    capability.kind.value,
                    capability.name,
                    description,
                    json.dumps(definition) if definition is not None else None,
                    1 if active else 0,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ValidationError(
                f"Connection already declares {capability.kind.value} '{name}'",
                error_code="DUPLICATE_CAPABILITY",
            ) from e

        row = self._fetch_one("SELECT * FROM capabilities WHERE uuid = ?", (capability.uuid,))
        return self._row_to_capability(row)

    def set_capability_active(self, capability_uuid: str, active: bool) -> None:
        updated = self._execute(
            "UPDATE capabilities SET active = ? WHERE uuid = ?",
            (1 if active else 0, capability_uuid),
        )
        if not updated:
            raise NotFound(f"Capability {capability_uuid} not found")

    def list_connection_capabilities(self, connection_uuid: str) -> List[DiscoveredCapability]:
        rows = self._fetch_all(
            "SELECT * FROM capabilities WHERE connection_uuid = ? ORDER BY created_seq",
            (connection_uuid,),
        )
        return [self._row_to_capability(row) for row in rows]

    def find_capabilities(
        self,
        profile_uuid: str,
        kind: CapabilityKind,
        name: Optional[str] = None,
    ) -> List[Tuple[DiscoveredCapability, Connection]]:
        """
        Active capabilities of active connections in a profile.

        Args:
            profile_uuid: Profile to search
            kind: Capability kind
            name: Exact name or URI; all names when omitted

        Returns:
            (capability, connection) pairs in no guaranteed order
        """
        query = """
            SELECT
                c.uuid AS cap_uuid, c.connection_uuid, c.kind, c.name AS cap_name,
                c.description, c.definition, c.active, c.created_seq AS cap_seq,
                k.*
            FROM capabilities c
            JOIN connections k ON k.uuid = c.connection_uuid
            WHERE k.profile_uuid = ? AND k.status = ? AND c.kind = ? AND c.active = 1
        """
        params: List[Any] = [profile_uuid, ConnectionStatus.ACTIVE.value, CapabilityKind(kind).value]
        if name is not None:
            query += " AND c.name = ?"
            params.append(name)

        results = []
        for row in self._fetch_all(query, params):
            capability = DiscoveredCapability(
                uuid=row["cap_uuid"],
                connection_uuid=row["connection_uuid"],
                kind=CapabilityKind(row["kind"]),
                name=row["cap_name"],
                description=row["description"],
                definition=json.loads(row["definition"]) if row["definition"] else None,
                active=bool(row["active"]),
                created_seq=row["cap_seq"],
            )
            results.append((capability, self._row_to_connection(row)))
        return results

    # API keys

    def create_api_key(
        self,
        project_uuid: str,
        name: str,
        key_id: str,
        salt: str,
        key_hash: str,
    ) -> ApiCredential:
        if self.get_project(project_uuid) is None:
            raise NotFound(f"Project {project_uuid} not found")

        credential = ApiCredential(
            uuid=str(uuid.uuid4()),
            project_uuid=project_uuid,
            name=name,
            key_id=key_id,
            salt=salt,
            key_hash=key_hash,
        )
        self._execute(
            """
            INSERT INTO api_keys (uuid, project_uuid, name, key_id, salt, key_hash, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                credential.uuid,
                credential.project_uuid,
                credential.name,
                credential.key_id,
                credential.salt,
                credential.key_hash,
                credential.created_at.isoformat(),
            ),
        )
        return credential

    def get_api_key_by_key_id(self, key_id: str) -> Optional[ApiCredential]:
        row = self._fetch_one("SELECT * FROM api_keys WHERE key_id = ?", (key_id,))
        return self._row_to_api_key(row) if row else None

    def list_api_keys(self, project_uuid: str) -> List[ApiCredential]:
        rows = self._fetch_all(
            "SELECT * FROM api_keys WHERE project_uuid = ? ORDER BY created_at, uuid",
            (project_uuid,),
        )
        return [self._row_to_api_key(row) for row in rows]

    def delete_api_key(self, key_uuid: str) -> bool:
        return self._execute("DELETE FROM api_keys WHERE uuid = ?", (key_uuid,)) > 0

    # Row conversion

    @staticmethod
    def _parse_time(value: str) -> datetime:
        return datetime.fromisoformat(value)

    def _row_to_project(self, row: sqlite3.Row) -> Project:
        return Project(
            uuid=row["uuid"],
            name=row["name"],
            active_profile_uuid=row["active_profile_uuid"],
            created_at=self._parse_time(row["created_at"]),
        )

    def _row_to_profile(self, row: sqlite3.Row) -> Profile:
        kinds = [CapabilityKind(k) for k in json.loads(row["enabled_capabilities"])]
        return Profile(
            uuid=row["uuid"],
            name=row["name"],
            project_uuid=row["project_uuid"],
            enabled_capabilities=kinds,
            created_at=self._parse_time(row["created_at"]),
        )

    def _row_to_connection(self, row: sqlite3.Row) -> Connection:
        return Connection(
            uuid=row["uuid"],
            profile_uuid=row["profile_uuid"],
            name=row["name"],
            type=ConnectionType(row["type"]),
            status=ConnectionStatus(row["status"]),
            params=EncryptedParams(
                command=EncryptedField(row["command_encrypted"]),
                args=EncryptedField(row["args_encrypted"]),
                env=EncryptedField(row["env_encrypted"]),
                url=EncryptedField(row["url_encrypted"]),
            ),
            source=ConnectionSource(row["source"]),
            external_id=row["external_id"],
            created_at=self._parse_time(row["created_at"]),
            created_seq=row["created_seq"],
        )

    def _row_to_capability(self, row: sqlite3.Row) -> DiscoveredCapability:
        return DiscoveredCapability(
            uuid=row["uuid"],
            connection_uuid=row["connection_uuid"],
            kind=CapabilityKind(row["kind"]),
            name=row["name"],
            description=row["description"],
            definition=json.loads(row["definition"]) if row["definition"] else None,
            active=bool(row["active"]),
            created_seq=row["created_seq"],
        )

    def _row_to_api_key(self, row: sqlite3.Row) -> ApiCredential:
        return ApiCredential(
            uuid=row["uuid"],
            project_uuid=row["project_uuid"],
            name=row["name"],
            key_id=row["key_id"],
            salt=row["salt"],
            key_hash=row["key_hash"],
            created_at=self._parse_time(row["created_at"]),
        )
