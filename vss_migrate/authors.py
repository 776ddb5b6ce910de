"""
Author mapping.

Maps raw source user names to commit identities using an emails.properties
file (user=Name <email> or user=email). Users without an entry fall back to
<user>@<DefaultEmailDomain>, or the bare user name when no domain is set.
"""

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from vss_migrate.errors import ConfigurationIOError
from vss_migrate.models import AuthorIdentity
from vss_migrate.properties import read_properties, write_properties


logger = logging.getLogger(__name__)

EMAILS_FILE = "emails.properties"

_NAME_EMAIL = re.compile(r"^(?P<name>.*?)\s*<(?P<email>[^>]*)>\s*$")


class AuthorMapping:
    """Lower-cased user name -> mapping value."""

    def __init__(self, mapping: Optional[Dict[str, str]] = None, email_domain: str = ""):
        self.email_domain = email_domain.strip().lstrip("@")
        self._mapping: Dict[str, str] = {}
        for user, value in (mapping or {}).items():
            self._mapping[user.strip().lower()] = value.strip()

    def __contains__(self, user: str) -> bool:
        return bool(self._mapping.get(user.strip().lower()))

    def __len__(self) -> int:
        return len(self._mapping)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._mapping)

    def resolve(self, user: str) -> str:
        """
        Get the mapped author string for a user.

        Returns:
            Mapping value, <user>@<domain>, or the bare user
        """
        key = user.strip().lower()
        value = self._mapping.get(key)
        if value:
            return value
        if self.email_domain:
            return f"{key}@{self.email_domain}"
        return key

    def identity(self, user: str) -> AuthorIdentity:
        """Get the commit identity (name and email) for a user."""
        value = self.resolve(user)
        match = _NAME_EMAIL.match(value)
        if match:
            name = match.group("name").strip() or user.strip()
            return AuthorIdentity(name=name, email=match.group("email").strip())
        return AuthorIdentity(name=user.strip(), email=value)

    def unmapped(self, users: Iterable[str]) -> List[str]:
        """Lower-cased users that have no mapping entry, sorted."""
        return sorted({u.strip().lower() for u in users if u.strip().lower() not in self._mapping})

    def add_users(self, users: Iterable[str]) -> int:
        """
        Add empty entries for unmapped users.

        Returns:
            Number of users added
        """
        added = self.unmapped(users)
        for user in added:
            self._mapping[user] = ""
        return len(added)

    def save(self, path: Path) -> None:
        """Write the mapping as a properties file (sorted by user)."""
        write_properties(path, {user: self._mapping[user] for user in sorted(self._mapping)})
        logger.info(f"Wrote {len(self._mapping)} author(s) to {path}")

    @staticmethod
    def find_file(base_path: Optional[Path]) -> Optional[Path]:
        """Locate emails.properties in the source base path, then the working directory."""
        candidates = []
        if base_path is not None:
            candidates.append(Path(base_path) / EMAILS_FILE)
        candidates.append(Path.cwd() / EMAILS_FILE)
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    @classmethod
    def load(cls, base_path: Optional[Path], email_domain: str = "") -> "AuthorMapping":
        """
        Load the mapping for a source.

        A missing or unreadable file gives an empty mapping.
        """
        path = cls.find_file(base_path)
        if path is None:
            logger.debug(f"No {EMAILS_FILE} found, using default author mapping")
            return cls(email_domain=email_domain)

        try:
            mapping = read_properties(path)
        except ConfigurationIOError as e:
            logger.warning(f"Ignoring author mapping: {e}")
            return cls(email_domain=email_domain)

        logger.info(f"Loaded {len(mapping)} author mapping(s) from {path}")
        return cls(mapping, email_domain=email_domain)
