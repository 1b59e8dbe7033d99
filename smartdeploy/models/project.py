"""Project characteristics produced by repository introspection."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

DatabaseEngine = Literal["postgres", "mysql", "mssql"]


class ServiceDescriptor(BaseModel):
    """One independently deployed service of a multi-service repository."""

    model_config = ConfigDict(frozen=True)

    name: str
    work_dir: str = "."
    language: str = ""
    framework: str = ""
    port: int | None = None
    dockerfile: str | None = None
    depends_on: list[str] = Field(default_factory=list)

    @property
    def default_port(self) -> int:
        if self.port:
            return self.port
        return 3000 if self.framework == "nextjs" or self.language == "node" else 8080


class ProjectProfile(BaseModel):
    """Detected characteristics of a repository."""

    model_config = ConfigDict(frozen=True)

    language: str = ""
    framework: str = ""
    has_container_file: bool = False
    port: int | None = None

    uses_websockets: bool = False
    uses_database: bool = False
    is_multi_service: bool = False

    # Next.js with `output: "export"`
    is_static_export: bool = False
    database_engine: DatabaseEngine | None = None
    # Explicit opt-out of managed platforms
    prefers_full_control: bool = False

    # Declared commands, copied from the request before selection
    build_cmd: str | None = None
    run_cmd: str | None = None

    services: list[ServiceDescriptor] = Field(default_factory=list)


class DatabaseSpec(BaseModel):
    """Desired managed database instance."""

    engine: DatabaseEngine = "postgres"
    instance_identifier: str
    db_name: str = "appdb"
    username: str = "dbadmin"
    password: str | None = Field(default=None, repr=False)
    region: str | None = None
