"""Per-entity schema declarations for the account store.

Each entity store owns one creation step (its tables in their current shape)
and the history of upgrade steps that brought older stores to that shape.
Steps are never edited once released: existing stores must replay every
historical transition exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from messenger_runtime.storage.migrator import CreationStep, MigrationStep


@dataclass(frozen=True, slots=True)
class EntitySchema:
    entity: str
    create: tuple[str, ...]
    upgrades: tuple[MigrationStep, ...] = ()

    @property
    def creation_step(self) -> CreationStep:
        return CreationStep(entity=self.entity, statements=self.create)


# -- message send log ------------------------------------------------------

_SEND_LOG_CONTENT_V1: Final[str] = """
CREATE TABLE message_send_log_content (
  _id INTEGER PRIMARY KEY,
  group_id BLOB,
  timestamp INTEGER NOT NULL,
  content BLOB NOT NULL,
  content_hint INTEGER NOT NULL
)
"""

_SEND_LOG_CONTENT: Final[str] = """
CREATE TABLE message_send_log_content (
  _id INTEGER PRIMARY KEY,
  group_id BLOB,
  timestamp INTEGER NOT NULL,
  content BLOB NOT NULL,
  content_hint INTEGER NOT NULL,
  urgent BOOLEAN NOT NULL DEFAULT TRUE
)
"""

_SEND_LOG_TAIL: Final[tuple[str, ...]] = (
    """
    CREATE TABLE message_send_log (
      _id INTEGER PRIMARY KEY,
      content_id INTEGER NOT NULL REFERENCES message_send_log_content (_id) ON DELETE CASCADE,
      recipient_id INTEGER NOT NULL,
      device_id INTEGER NOT NULL
    )
    """,
    "CREATE INDEX mslc_timestamp_index ON message_send_log_content (timestamp)",
    "CREATE INDEX msl_recipient_index ON message_send_log (recipient_id, device_id, content_id)",
    "CREATE INDEX msl_content_index ON message_send_log (content_id)",
)

SEND_LOG: Final[EntitySchema] = EntitySchema(
    entity="message_send_log",
    create=(_SEND_LOG_CONTENT, *_SEND_LOG_TAIL),
    upgrades=(
        MigrationStep(
            threshold=9,
            entity="message_send_log",
            name="add urgent field",
            statements=(
                """
                ALTER TABLE message_send_log_content
                ADD COLUMN urgent BOOLEAN NOT NULL DEFAULT TRUE
                """,
            ),
        ),
    ),
)

# -- recipients --------------------------------------------------------------

_RECIPIENT: Final[str] = """
CREATE TABLE recipient (
  _id INTEGER PRIMARY KEY AUTOINCREMENT,
  number TEXT UNIQUE,
  uuid BLOB UNIQUE,
  profile_key BLOB,
  profile_key_credential BLOB,

  given_name TEXT,
  family_name TEXT,
  color TEXT,

  expiration_time INTEGER NOT NULL DEFAULT 0,
  blocked BOOLEAN NOT NULL DEFAULT FALSE,
  archived BOOLEAN NOT NULL DEFAULT FALSE,
  profile_sharing BOOLEAN NOT NULL DEFAULT FALSE,

  profile_last_update_timestamp INTEGER NOT NULL DEFAULT 0,
  profile_given_name TEXT,
  profile_family_name TEXT,
  profile_about TEXT,
  profile_about_emoji TEXT,
  profile_avatar_url_path TEXT,
  profile_mobile_coin_address BLOB,
  profile_unidentified_access_mode TEXT,
  profile_capabilities TEXT
)
"""

RECIPIENT: Final[EntitySchema] = EntitySchema(
    entity="recipient",
    create=(_RECIPIENT,),
    upgrades=(
        MigrationStep(
            threshold=2,
            entity="recipient",
            name="create recipient table",
            statements=(_RECIPIENT,),
        ),
    ),
)

# -- stickers --------------------------------------------------------------

_STICKER: Final[str] = """
CREATE TABLE sticker (
  _id INTEGER PRIMARY KEY,
  pack_id BLOB UNIQUE NOT NULL,
  pack_key BLOB NOT NULL,
  installed BOOLEAN NOT NULL DEFAULT FALSE
)
"""

STICKER: Final[EntitySchema] = EntitySchema(
    entity="sticker",
    create=(_STICKER,),
    upgrades=(
        MigrationStep(
            threshold=3,
            entity="sticker",
            name="create sticker table",
            statements=(_STICKER,),
        ),
    ),
)

# -- pre-keys --------------------------------------------------------------

_SIGNED_PRE_KEY: Final[str] = """
CREATE TABLE signed_pre_key (
  _id INTEGER PRIMARY KEY,
  account_id_type INTEGER NOT NULL,
  key_id INTEGER NOT NULL,
  public_key BLOB NOT NULL,
  private_key BLOB NOT NULL,
  signature BLOB NOT NULL,
  timestamp INTEGER DEFAULT 0,
  UNIQUE(account_id_type, key_id)
)
"""

_PRE_KEY: Final[str] = """
CREATE TABLE pre_key (
  _id INTEGER PRIMARY KEY,
  account_id_type INTEGER NOT NULL,
  key_id INTEGER NOT NULL,
  public_key BLOB NOT NULL,
  private_key BLOB NOT NULL,
  UNIQUE(account_id_type, key_id)
)
"""

PRE_KEY: Final[EntitySchema] = EntitySchema(
    entity="pre_key",
    create=(_PRE_KEY,),
    upgrades=(
        MigrationStep(
            threshold=4,
            entity="pre_key",
            name="create pre key tables",
            statements=(_SIGNED_PRE_KEY, _PRE_KEY),
        ),
    ),
)

# Both pre-key tables were introduced by one step owned by the pre-key store;
# the signed pre-key store only declares its creation step.
SIGNED_PRE_KEY: Final[EntitySchema] = EntitySchema(
    entity="signed_pre_key",
    create=(_SIGNED_PRE_KEY,),
)

# -- groups ----------------------------------------------------------------

_GROUP_TABLES: Final[tuple[str, ...]] = (
    """
    CREATE TABLE group_v2 (
      _id INTEGER PRIMARY KEY,
      group_id BLOB UNIQUE NOT NULL,
      master_key BLOB NOT NULL,
      group_data BLOB,
      distribution_id BLOB UNIQUE NOT NULL,
      blocked BOOLEAN NOT NULL DEFAULT FALSE,
      permission_denied BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE group_v1 (
      _id INTEGER PRIMARY KEY,
      group_id BLOB UNIQUE NOT NULL,
      group_id_v2 BLOB UNIQUE,
      name TEXT,
      color TEXT,
      expiration_time INTEGER NOT NULL DEFAULT 0,
      blocked BOOLEAN NOT NULL DEFAULT FALSE,
      archived BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE group_v1_member (
      _id INTEGER PRIMARY KEY,
      group_id INTEGER NOT NULL REFERENCES group_v1 (_id) ON DELETE CASCADE,
      recipient_id INTEGER NOT NULL REFERENCES recipient (_id) ON DELETE CASCADE,
      UNIQUE(group_id, recipient_id)
    )
    """,
)

GROUP: Final[EntitySchema] = EntitySchema(
    entity="group",
    create=_GROUP_TABLES,
    upgrades=(
        MigrationStep(
            threshold=5,
            entity="group",
            name="create group tables",
            statements=_GROUP_TABLES,
        ),
    ),
)

# -- sessions --------------------------------------------------------------

_SESSION: Final[str] = """
CREATE TABLE session (
  _id INTEGER PRIMARY KEY,
  account_id_type INTEGER NOT NULL,
  recipient_id INTEGER NOT NULL REFERENCES recipient (_id) ON DELETE CASCADE,
  device_id INTEGER NOT NULL,
  record BLOB NOT NULL,
  UNIQUE(account_id_type, recipient_id, device_id)
)
"""

SESSION: Final[EntitySchema] = EntitySchema(
    entity="session",
    create=(_SESSION,),
    upgrades=(
        MigrationStep(
            threshold=6,
            entity="session",
            name="create session table",
            statements=(_SESSION,),
        ),
    ),
)

# -- identities ------------------------------------------------------------

_IDENTITY: Final[str] = """
CREATE TABLE identity (
  _id INTEGER PRIMARY KEY,
  recipient_id INTEGER UNIQUE NOT NULL REFERENCES recipient (_id) ON DELETE CASCADE,
  identity_key BLOB NOT NULL,
  added_timestamp INTEGER NOT NULL,
  trust_level INTEGER NOT NULL
)
"""

IDENTITY: Final[EntitySchema] = EntitySchema(
    entity="identity",
    create=(_IDENTITY,),
    upgrades=(
        MigrationStep(
            threshold=7,
            entity="identity",
            name="create identity table",
            statements=(_IDENTITY,),
        ),
    ),
)

# -- sender keys -----------------------------------------------------------

_SENDER_KEY: Final[str] = """
CREATE TABLE sender_key (
  _id INTEGER PRIMARY KEY,
  recipient_id INTEGER NOT NULL REFERENCES recipient (_id) ON DELETE CASCADE,
  device_id INTEGER NOT NULL,
  distribution_id BLOB NOT NULL,
  record BLOB NOT NULL,
  created_timestamp INTEGER NOT NULL,
  UNIQUE(recipient_id, device_id, distribution_id)
)
"""

_SENDER_KEY_SHARED: Final[str] = """
CREATE TABLE sender_key_shared (
  _id INTEGER PRIMARY KEY,
  recipient_id INTEGER NOT NULL REFERENCES recipient (_id) ON DELETE CASCADE,
  device_id INTEGER NOT NULL,
  distribution_id BLOB NOT NULL,
  timestamp INTEGER NOT NULL,
  UNIQUE(recipient_id, device_id, distribution_id)
)
"""

SENDER_KEY: Final[EntitySchema] = EntitySchema(
    entity="sender_key",
    create=(_SENDER_KEY,),
    upgrades=(
        MigrationStep(
            threshold=8,
            entity="sender_key",
            name="create sender key tables",
            statements=(_SENDER_KEY, _SENDER_KEY_SHARED),
        ),
    ),
)

SENDER_KEY_SHARED: Final[EntitySchema] = EntitySchema(
    entity="sender_key_shared",
    create=(_SENDER_KEY_SHARED,),
)

# Creation order matters: referenced tables come before their referrers.
ACCOUNT_SCHEMA: Final[tuple[EntitySchema, ...]] = (
    RECIPIENT,
    SEND_LOG,
    STICKER,
    PRE_KEY,
    SIGNED_PRE_KEY,
    GROUP,
    SESSION,
    IDENTITY,
    SENDER_KEY,
    SENDER_KEY_SHARED,
)

# Schema of a version-1 store, before any upgrade step existed.
_BASELINE: Final[CreationStep] = CreationStep(
    entity="message_send_log",
    statements=(_SEND_LOG_CONTENT_V1, *_SEND_LOG_TAIL),
)


def creation_steps() -> tuple[CreationStep, ...]:
    return tuple(schema.creation_step for schema in ACCOUNT_SCHEMA)


def upgrade_steps() -> tuple[MigrationStep, ...]:
    """All historical upgrade steps in declaration order (the migrator sorts by threshold)."""

    return tuple(step for schema in ACCOUNT_SCHEMA for step in schema.upgrades)


def baseline_steps() -> tuple[CreationStep, ...]:
    """Creation steps reproducing a version-1 store, for tooling and upgrade tests."""

    return (_BASELINE,)


__all__ = [
    "ACCOUNT_SCHEMA",
    "EntitySchema",
    "baseline_steps",
    "creation_steps",
    "upgrade_steps",
]
