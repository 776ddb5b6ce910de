"""
Configuration management for vss-migrate.

Run settings live in a key=value properties file, with the same keys as
Vss2Git settings files. They are parsed into a typed MigrationSettings
object, and the target VCS is chosen from a closed set of typed backend
targets.
"""

import codecs
import logging
import os
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from vss_migrate.errors import ConfigurationIOError
from vss_migrate.properties import read_properties, write_properties


logger = logging.getLogger(__name__)

# Default settings path (relative to the working directory)
DEFAULT_SETTINGS_FILE = Path("vss-migrate.properties")

# Environment fallbacks (also read from .env)
ENV_SVN_USER = "SVN_USER"
ENV_SVN_PASSWORD = "SVN_PASSWORD"


class VcsType(str, Enum):
    """Supported target VCS types."""
    GIT = "git"
    SVN = "svn"


class GitTarget(BaseModel):
    """Git repository target."""

    kind: Literal["git"] = "git"
    repo_path: str
    force_annotated_tags: bool = True


class SvnTarget(BaseModel):
    """Subversion repository target."""

    kind: Literal["svn"] = "svn"
    working_copy: str
    repo_url: str
    project_path: str = ""
    trunk: str = "trunk"
    tags: str = "tags"
    branches: str = "branches"
    username: Optional[str] = None
    password: Optional[str] = None


class MemoryTarget(BaseModel):
    """In-memory target for dry runs."""

    kind: Literal["memory"] = "memory"


BackendTarget = Annotated[Union[GitTarget, SvnTarget, MemoryTarget], Field(discriminator="kind")]


class MigrationSettings(BaseModel):
    """
    Settings of one migration run.

    Field aliases are the keys used in the properties file.
    """

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    # Source
    vss_directory: str = Field(default="", alias="VssDirectory", description="Source database directory")
    vss_project: str = Field(default="$", alias="VssProject", description="Project path to migrate")
    vss_exclude_paths: str = Field(default="", alias="VssExcludePaths", description="Exclusion patterns")
    vss_encoding: str = Field(default="utf-8", alias="VssEncoding", description="Source text encoding")

    # Output
    out_directory: str = Field(default="", alias="OutDirectory", description="Target repository directory")
    default_email_domain: str = Field(default="", alias="DefaultEmailDomain")
    log_file: str = Field(default="", alias="LogFile")
    transcode_comments: bool = Field(default=True, alias="TranscodeComments")
    reset_repo: bool = Field(default=False, alias="ResetRepo")
    continue_sync: bool = Field(default=False, alias="ContinueSync")
    force_annotated_tags: bool = Field(default=True, alias="ForceAnnotatedTags")

    # Changeset grouping
    any_comment_seconds: int = Field(default=30, ge=0, alias="AnyCommentSeconds")
    same_comment_seconds: int = Field(default=600, ge=0, alias="SameCommentSeconds")

    # Target VCS
    vcs_type: VcsType = Field(default=VcsType.GIT, alias="VcsType")
    svn_repo: str = Field(default="", alias="SvnRepo")
    svn_project_path: str = Field(default="", alias="SvnProjectPath")
    svn_user: str = Field(default="", alias="SvnUser")
    svn_password: str = Field(default="", alias="SvnPassword")
    svn_standard_layout: bool = Field(default=True, alias="SvnStandardLayout")
    svn_trunk: str = Field(default="trunk", alias="SvnTrunk")
    svn_tags: str = Field(default="tags", alias="SvnTags")
    svn_branches: str = Field(default="branches", alias="SvnBranches")

    @field_validator("vss_encoding")
    @classmethod
    def validate_encoding(cls, v: str) -> str:
        """Accept codec names and bare Windows code page numbers (1252)."""
        name = v.strip() or "utf-8"
        if name.isdigit():
            name = f"cp{name}"
        try:
            return codecs.lookup(name).name
        except LookupError:
            raise ValueError(f"Unknown encoding: {v}") from None

    @field_validator("vcs_type", mode="before")
    @classmethod
    def fold_vcs_type(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_thresholds(self) -> "MigrationSettings":
        if self.same_comment_seconds < self.any_comment_seconds:
            raise ValueError(
                f"SameCommentSeconds ({self.same_comment_seconds}) must not be less than "
                f"AnyCommentSeconds ({self.any_comment_seconds})"
            )
        return self

    @property
    def any_comment_threshold(self) -> timedelta:
        return timedelta(seconds=self.any_comment_seconds)

    @property
    def same_comment_threshold(self) -> timedelta:
        return timedelta(seconds=self.same_comment_seconds)

    def backend_target(self, dry_run: bool = False) -> Optional[BackendTarget]:
        """
        Get the typed target for the configured VCS.

        Args:
            dry_run: Export to memory instead of the configured target

        Returns:
            Target settings, or None when no output directory is set
        """
        if dry_run:
            return MemoryTarget()
        if not self.out_directory:
            return None

        if self.vcs_type == VcsType.GIT:
            return GitTarget(
                repo_path=self.out_directory,
                force_annotated_tags=self.force_annotated_tags,
            )

        if self.svn_standard_layout:
            trunk, tags, branches = "trunk", "tags", "branches"
        else:
            trunk, tags, branches = self.svn_trunk, self.svn_tags, self.svn_branches

        return SvnTarget(
            working_copy=self.out_directory,
            repo_url=self.svn_repo,
            project_path=self.svn_project_path,
            trunk=trunk,
            tags=tags,
            branches=branches,
            username=self.svn_user or os.getenv(ENV_SVN_USER) or None,
            password=self.svn_password or os.getenv(ENV_SVN_PASSWORD) or None,
        )

    @classmethod
    def from_properties(cls, values: Dict[str, str]) -> "MigrationSettings":
        """
        Build settings from properties values.

        Raises:
            ValidationError: If a value is invalid
        """
        known = {field.alias for field in cls.model_fields.values()}
        for key in values:
            if key not in known:
                logger.warning(f"Ignoring unknown setting: {key}")
        return cls.model_validate({k: v for k, v in values.items() if k in known})

    def to_properties(self) -> Dict[str, str]:
        """Get the non-default settings as properties values."""
        result: Dict[str, str] = {}
        for key, value in self.model_dump(by_alias=True, exclude_defaults=True, mode="json").items():
            if isinstance(value, bool):
                value = "True" if value else "False"
            result[key] = str(value)
        return result


class ConfigManager:
    """
    Manages run settings.

    Loads settings from a properties file, applies updates and writes them
    back atomically.
    """

    def __init__(self, settings_file: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            settings_file: Path to settings file. Defaults to ./vss-migrate.properties
        """
        self.settings_file = Path(settings_file) if settings_file else DEFAULT_SETTINGS_FILE
        self.settings = self._load_settings()

    def _load_settings(self) -> MigrationSettings:
        """Load settings from file, falling back to defaults."""
        if not self.settings_file.exists():
            logger.debug(f"Settings file not found, using defaults: {self.settings_file}")
            return MigrationSettings()

        try:
            values = read_properties(self.settings_file)
            return MigrationSettings.from_properties(values)
        except (ConfigurationIOError, ValidationError) as e:
            logger.warning(f"Invalid settings file {self.settings_file}, using defaults: {e}")
            return MigrationSettings()

    def save_settings(self) -> None:
        """Write non-default settings to the settings file."""
        write_properties(self.settings_file, self.settings.to_properties())
        logger.debug(f"Settings saved: {self.settings_file}")

    def reload(self) -> None:
        """Reload settings from disk."""
        self.settings = self._load_settings()

    def update_settings(self, **kwargs) -> None:
        """
        Update settings by field name and save.

        Args:
            **kwargs: Settings to update (out_directory, vcs_type, etc.)

        Raises:
            ValueError: If a setting is unknown or invalid
        """
        values = self.settings.model_dump()
        for key, value in kwargs.items():
            if key not in values:
                raise ValueError(f"Unknown setting: {key}")
            values[key] = value

        self.settings = MigrationSettings.model_validate(values)
        self.save_settings()
