from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = "local"
    APP_NAME: str = "backoffice"
    LOG_LEVEL: str = "INFO"

    ADMIN_JWT_TTL_MINUTES: int = 240
    ADMIN_JWT_SECRET: str = "change_me_admin"

    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:8081"

    DATABASE_URL: str = "sqlite+pysqlite:///./backoffice.db"

    LIST_DEFAULT_PER_PAGE: int = 15
    LIST_MAX_PER_PAGE: int = 100
    EXPORT_PAGE_SIZE: int = 1000

    ROLES_PROTECTED_NAMES: str = "admin"
    ROLES_BLOCK_DEACTIVATE_PROTECTED: bool = True
    ROLES_BLOCK_DEACTIVATE_IF_HAS_USERS: bool = True

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def roles_protected_names_set(self) -> set[str]:
        return {name.strip() for name in self.ROLES_PROTECTED_NAMES.split(",") if name.strip()}

settings = Settings()
