"""Translation between internal status/severity and provider vocabularies"""

import enum
import logging
from typing import Optional

from bugsync.models.enums import BugSeverity, BugStatus
from bugsync.models.provider_config import FieldMapping

logger = logging.getLogger(__name__)


class Direction(str, enum.Enum):
    TO_EXTERNAL = "to_external"
    FROM_EXTERNAL = "from_external"


class Kind(str, enum.Enum):
    STATUS = "status"
    SEVERITY = "severity"


# Internal values used when a tenant's table has no entry.
DEFAULTS = {
    Kind.STATUS: BugStatus.OPEN.value,
    Kind.SEVERITY: BugSeverity.MEDIUM.value,
}


class FieldMapper:
    """Looks values up in a tenant's FieldMapping.

    Mapping tables are routinely incomplete, so translate() never raises:
    a miss resolves to the documented default and logs a warning.
    """

    @staticmethod
    def _key(value) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, enum.Enum):
            value = value.value
        return str(value)

    @classmethod
    def lookup(
        cls, direction: Direction, kind: Kind, mapping: FieldMapping, value
    ) -> Optional[str]:
        """Exact table entry for `value`, or None. No defaulting."""
        key = cls._key(value)
        if key is None:
            return None
        kind = Kind(kind)
        if Direction(direction) == Direction.TO_EXTERNAL:
            table = mapping.forward(kind.value)
        else:
            table = mapping.reverse(kind.value)
        return table.get(key)

    @classmethod
    def translate(
        cls, direction: Direction, kind: Kind, mapping: FieldMapping, value
    ) -> Optional[str]:
        """Map `value`, falling back to the default on a miss.

        from_external: a miss returns the internal default (OPEN / MEDIUM).
        to_external: a miss returns the provider value mapped for the internal
        default, or None when the default is not mapped either (callers then
        omit the field).
        """
        direction = Direction(direction)
        kind = Kind(kind)
        mapped = cls.lookup(direction, kind, mapping, value)
        if mapped is not None:
            return mapped

        default = DEFAULTS[kind]
        if direction == Direction.FROM_EXTERNAL:
            if value is not None:
                logger.warning(
                    f"No {kind.value} mapping for external value '{cls._key(value)}' "
                    f"(mapping v{mapping.version}); using {default}"
                )
            return default

        fallback = mapping.forward(kind.value).get(default)
        logger.warning(
            f"No {kind.value} mapping for '{cls._key(value)}' "
            f"(mapping v{mapping.version}); using value of {default}: {fallback!r}"
        )
        return fallback
