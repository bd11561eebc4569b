from __future__ import annotations

import secrets
import string
import uuid
from typing import Optional

from tinyauth.config import TokenStyle
from tinyauth.idgen.nanoid import nanoid
from tinyauth.idgen.objectid import ObjectIdGenerator
from tinyauth.idgen.snowflake import Snowflake
from tinyauth.idgen.ulid import UlidFactory

RANDOM_TOKEN_ALPHABET = string.ascii_letters + string.digits
RANDOM_TOKEN_LENGTH = 128


def random_string(length: int = RANDOM_TOKEN_LENGTH, alphabet: str = RANDOM_TOKEN_ALPHABET) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


class TokenGenerator:
    """Produces session token strings in the configured style.

    Stateful generators (snowflake sequence, ULID monotonic state, ObjectId
    counter) live on the instance, so one generator should be shared by all
    callers of a process.
    """

    def __init__(
        self,
        style: TokenStyle | str | None = TokenStyle.UUID,
        *,
        snowflake: Optional[Snowflake] = None,
        ulid_factory: Optional[UlidFactory] = None,
        object_ids: Optional[ObjectIdGenerator] = None,
    ) -> None:
        self.style = TokenStyle.parse(style)
        self._snowflake = snowflake or Snowflake()
        self._ulid_factory = ulid_factory or UlidFactory()
        self._object_ids = object_ids or ObjectIdGenerator()

    def generate(self, style: TokenStyle | str | None = None) -> str:
        selected = self.style if style is None else TokenStyle.parse(style)
        if selected is TokenStyle.ULID:
            return self._ulid_factory.create_monotonic().lower()
        if selected is TokenStyle.SNOWFLAKE:
            return self._snowflake.next_id_str()
        if selected is TokenStyle.OBJECT_ID:
            return self._object_ids.next_id()
        if selected is TokenStyle.RANDOM128:
            return random_string()
        if selected is TokenStyle.NANOID:
            return nanoid()
        return uuid.uuid4().hex


_default_generator: TokenGenerator | None = None


def generate_token(style: TokenStyle | str | None = None) -> str:
    """Generate a token with the process-wide generator."""
    global _default_generator
    if _default_generator is None:
        _default_generator = TokenGenerator()
    return _default_generator.generate(style)
