"""Pydantic configuration schema for the sender categorizer.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from sender_categorizer.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class AuthConfig(BaseModel):
    """Azure AD authentication configuration (used by the `login` command)."""

    client_id: str = Field(description="Azure AD Application (client) ID")
    tenant_id: str = Field(
        default="common",
        description="Azure AD Directory (tenant) ID or 'common' for personal accounts",
    )
    scopes: list[str] = Field(
        default=["Mail.Read", "User.Read"],
        description="Microsoft Graph API permission scopes",
    )
    token_cache_path: str = Field(
        default="data/token_cache.json",
        description="Path to MSAL token cache file",
    )

    @field_validator("token_cache_path")
    @classmethod
    def validate_token_cache_path(cls, v: str) -> str:
        """Ensure token cache path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Token cache path cannot be empty")
        if ".." in v:
            raise ValueError("Token cache path cannot contain '..' (path traversal)")
        return v


class ModelsConfig(BaseModel):
    """Claude model selection per classification stage."""

    batch: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for batch sender classification",
    )
    single: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for single-sender fallback classification",
    )


class CategorizeConfig(BaseModel):
    """Sender categorization pipeline configuration."""

    page_size: int = Field(
        default=20,
        ge=1,
        le=50,
        description="Messages read from the mailbox per invocation",
    )
    fallback_snippet_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Recent messages fetched for a sender with no snippets in hand",
    )
    fallback_concurrency: int = Field(
        default=1,
        ge=1,
        le=5,
        description="Senders classified concurrently in the fallback stage (1 = sequential)",
    )
    max_pages: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Page limit for `categorize --all`",
    )
    max_snippet_length: int = Field(
        default=300,
        ge=50,
        le=2000,
        description="Characters of each snippet sent to Claude",
    )


class DatabaseConfig(BaseModel):
    """SQLite database location."""

    path: str = Field(
        default="data/sender_categorizer.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path is not empty and doesn't contain traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Days to retain LLM request logs",
    )
    log_prompts: bool = Field(
        default=True,
        description="Store full prompts (disable to save disk space)",
    )
    log_responses: bool = Field(
        default=True,
        description="Store full responses",
    )


class CategorySeedConfig(BaseModel):
    """A category offered by `seed-categories`."""

    name: str = Field(description="Category name (unique per user)")
    description: str | None = Field(default=None, description="Guidance for the classifier")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Category names must be non-empty after trimming."""
        if not v or not v.strip():
            raise ValueError("Category name cannot be empty")
        return v.strip()


def _default_category_seeds() -> list[CategorySeedConfig]:
    return [
        CategorySeedConfig(
            name="Newsletter",
            description="Newsletters, blogs and publications the user subscribed to",
        ),
        CategorySeedConfig(
            name="Marketing",
            description="Promotions, sales and product announcements",
        ),
        CategorySeedConfig(
            name="Receipt",
            description="Receipts, invoices, order confirmations and payment notices",
        ),
        CategorySeedConfig(
            name="Banking",
            description="Banks, card issuers and financial institutions",
        ),
        CategorySeedConfig(
            name="Notification",
            description="Automated account, security and service notifications",
        ),
        CategorySeedConfig(
            name="Personal",
            description="Individuals writing to the user personally",
        ),
        CategorySeedConfig(
            name="Work",
            description="Colleagues, clients and professional contacts",
        ),
        CategorySeedConfig(
            name="Travel",
            description="Airlines, hotels, bookings and itineraries",
        ),
    ]


class AppConfig(BaseModel):
    """Root configuration schema for the sender categorizer.

    If validation fails on startup, the CLI exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    auth: AuthConfig | None = Field(
        default=None,
        description="MSAL settings; required only for the `login` command",
    )
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    categorize: CategorizeConfig = Field(default_factory=CategorizeConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)
    default_categories: list[CategorySeedConfig] = Field(
        default_factory=_default_category_seeds,
        description="Categories created by `seed-categories`",
    )

    @field_validator("default_categories")
    @classmethod
    def validate_unique_category_names(
        cls, v: list[CategorySeedConfig]
    ) -> list[CategorySeedConfig]:
        """Category names must be unique (case-sensitive, matching the database)."""
        names = [c.name for c in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate category names: {', '.join(duplicates)}")
        return v
