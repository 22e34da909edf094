from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List

from peewee import (
    AutoField,
    CharField,
    DateTimeField,
    IntegerField,
    Model,
    SqliteDatabase,
)

from .status import utcnow_naive

session_database = SqliteDatabase(None)


class BaseModel(Model):
    created_at = DateTimeField(default=utcnow_naive)
    updated_at = DateTimeField(default=utcnow_naive)

    def save(self, *args, **kwargs):  # type: ignore[override]
        self.updated_at = utcnow_naive()
        return super().save(*args, **kwargs)

    class Meta:
        database = session_database


class PlayerSession(BaseModel):
    id = AutoField()
    player_uuid = CharField(index=True)
    username = CharField()
    server_id = IntegerField(index=True)
    session_start = DateTimeField()
    session_end = DateTimeField(null=True)
    seconds_played = IntegerField(null=True)

    class Meta:
        table_name = "player_session"


def init_db(path: str):
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    session_database.init(path)
    session_database.connect(reuse_if_open=True)
    session_database.create_tables([PlayerSession])


def close_db():
    if not session_database.is_closed():
        session_database.close()


def create_session(
    player_uuid: str, username: str, server_id: int, session_start: datetime
) -> PlayerSession:
    return PlayerSession.create(
        player_uuid=player_uuid,
        username=username,
        server_id=server_id,
        session_start=session_start,
    )


def finish_session(
    session_id: int, session_end: datetime, seconds_played: int
) -> bool:
    updated = (
        PlayerSession.update(
            session_end=session_end,
            seconds_played=seconds_played,
            updated_at=utcnow_naive(),
        )
        .where(
            (PlayerSession.id == session_id) & (PlayerSession.session_end.is_null())
        )
        .execute()
    )
    return updated > 0


def list_open_sessions(server_id: int | None = None) -> List[PlayerSession]:
    query = PlayerSession.select().where(PlayerSession.session_end.is_null())
    if server_id is not None:
        query = query.where(PlayerSession.server_id == server_id)
    return list(query.order_by(PlayerSession.session_start))


def close_open_sessions(server_id: int, ended_at: datetime | None = None) -> int:
    ended_at = ended_at or utcnow_naive()
    closed = 0
    with session_database.atomic():
        for row in list_open_sessions(server_id):
            row.session_end = ended_at
            row.seconds_played = max(
                int((ended_at - row.session_start).total_seconds()), 0
            )
            row.save()
            closed += 1
    return closed


def discard_session(session_id: int) -> bool:
    deleted = PlayerSession.delete().where(PlayerSession.id == session_id).execute()
    return deleted > 0
