"""
FlashTune - Library Database Tests

Tests for flashtune/database.py and the write queue in flashtune/session.py
(no volume attached unless stated). Validates:
- Ordering of songs, playlists and playlist songs
- Duplicate source_url inserts are ignored
- Partial updates, empty updates as no-ops
- Cascading deletes of memberships
- Idempotent playlist adds with append positions
- Write queue ordering and failure isolation
- Migrations for database copies missing newer columns
"""

import asyncio
import sqlite3

import pytest

from flashtune.session import SyncStatus, WriteQueue


def run(coro):
    return asyncio.run(coro)


# ===========================================================================
# Songs
# ===========================================================================


class TestSongs:
    def test_songs_ordered_newest_first(self, open_library, song_factory):
        async def scenario():
            async with open_library() as library:
                for n, date in [(1, "2024-01-01T00:00:00"), (2, "2024-03-01T00:00:00"), (3, "2024-02-01T00:00:00")]:
                    await library.db.insert_song(**song_factory(n, download_date=date))
                return await library.db.get_all_songs()

        songs = run(scenario())
        assert [s["title"] for s in songs] == ["Song 2", "Song 3", "Song 1"]

    def test_insert_defaults(self, open_library, sample_song):
        async def scenario():
            async with open_library() as library:
                outcome = await library.db.insert_song(**sample_song)
                return outcome, await library.db.get_song(outcome.value)

        outcome, song = run(scenario())
        assert isinstance(outcome.value, int)
        assert outcome.warning is None
        assert outcome.mirror.status is SyncStatus.SKIPPED
        assert song["album"] == ""
        assert song["cover_path"] == ""
        assert song["duration_ms"] == 320000
        assert song["download_date"]

    def test_duplicate_source_url_is_ignored(self, open_library, sample_song):
        async def scenario():
            async with open_library() as library:
                first = await library.db.insert_song(**sample_song)
                second = await library.db.insert_song(**{**sample_song, "title": "Other"})
                return first, second, await library.db.get_all_songs()

        first, second, songs = run(scenario())
        assert first.value is not None
        assert second.value is None
        assert len(songs) == 1
        assert songs[0]["title"] == "One More Time"

    def test_song_exists_by_url(self, open_library, sample_song):
        async def scenario():
            async with open_library() as library:
                before = await library.db.song_exists_by_url(sample_song["source_url"])
                await library.db.insert_song(**sample_song)
                after = await library.db.song_exists_by_url(sample_song["source_url"])
                return before, after

        assert run(scenario()) == (False, True)

    def test_update_song_partial(self, open_library, sample_song):
        async def scenario():
            async with open_library() as library:
                song_id = (await library.db.insert_song(**sample_song)).value
                outcome = await library.db.update_song(song_id, album="Discovery", bogus="x")
                return outcome, await library.db.get_song(song_id)

        outcome, song = run(scenario())
        assert outcome.value is True
        assert song["album"] == "Discovery"
        assert song["title"] == "One More Time"

    def test_update_song_empty_is_noop(self, open_library, sample_song):
        async def scenario():
            async with open_library() as library:
                song_id = (await library.db.insert_song(**sample_song)).value
                return await library.db.update_song(song_id)

        outcome = run(scenario())
        assert outcome.value is False
        assert outcome.mirror.status is SyncStatus.SKIPPED

    def test_update_cannot_change_source_url(self, open_library, sample_song):
        async def scenario():
            async with open_library() as library:
                song_id = (await library.db.insert_song(**sample_song)).value
                outcome = await library.db.update_song(song_id, source_url="https://x")
                return outcome, await library.db.get_song(song_id)

        outcome, song = run(scenario())
        assert outcome.value is False
        assert song["source_url"] == sample_song["source_url"]


# ===========================================================================
# Playlists
# ===========================================================================


class TestPlaylists:
    def test_playlists_ordered_newest_first(self, open_library):
        async def scenario():
            async with open_library() as library:
                for name in ["Road Trip", "Gym", "Chill"]:
                    await library.db.create_playlist(name)
                return await library.db.get_all_playlists()

        playlists = run(scenario())
        assert [p["name"] for p in playlists] == ["Chill", "Gym", "Road Trip"]
        assert all(p["song_count"] == 0 for p in playlists)

    def test_add_appends_positions_and_is_idempotent(self, open_library, song_factory):
        async def scenario():
            async with open_library() as library:
                pid = (await library.db.create_playlist("Mix")).value
                ids = [(await library.db.insert_song(**song_factory(n))).value for n in range(3)]
                results = [await library.db.add_song_to_playlist(pid, sid) for sid in ids]
                again = await library.db.add_song_to_playlist(pid, ids[0])
                return ids, results, again, await library.db.get_playlist_songs(pid)

        ids, results, again, songs = run(scenario())
        assert all(r.value for r in results)
        assert again.value is False
        assert [s["id"] for s in songs] == ids
        assert [s["position"] for s in songs] == [1, 2, 3]

    def test_position_follows_max_after_removal(self, open_library, song_factory):
        async def scenario():
            async with open_library() as library:
                pid = (await library.db.create_playlist("Mix")).value
                a, b, c = [(await library.db.insert_song(**song_factory(n))).value for n in range(3)]
                await library.db.add_song_to_playlist(pid, a)
                await library.db.add_song_to_playlist(pid, b)
                await library.db.remove_song_from_playlist(pid, a)
                await library.db.add_song_to_playlist(pid, c)
                return await library.db.get_playlist_songs(pid)

        songs = run(scenario())
        assert [(s["title"], s["position"]) for s in songs] == [("Song 1", 2), ("Song 2", 3)]

    def test_remove_missing_pair_is_not_an_error(self, open_library):
        async def scenario():
            async with open_library() as library:
                pid = (await library.db.create_playlist("Mix")).value
                return await library.db.remove_song_from_playlist(pid, 999)

        assert run(scenario()).value is False

    def test_delete_song_cascades(self, open_library, song_factory):
        async def scenario():
            async with open_library() as library:
                p1 = (await library.db.create_playlist("One")).value
                p2 = (await library.db.create_playlist("Two")).value
                sid = (await library.db.insert_song(**song_factory(1))).value
                await library.db.add_song_to_playlist(p1, sid)
                await library.db.add_song_to_playlist(p2, sid)
                before = await library.db.get_playlist_ids_for_song(sid)
                await library.db.delete_song(sid)
                after = await library.db.get_playlist_ids_for_song(sid)
                return p1, p2, before, after, await library.db.get_playlist_songs(p1)

        p1, p2, before, after, remaining = run(scenario())
        assert before == {p1, p2}
        assert after == set()
        assert remaining == []

    def test_delete_playlist_cascades(self, open_library, song_factory):
        async def scenario():
            async with open_library() as library:
                pid = (await library.db.create_playlist("Mix")).value
                sid = (await library.db.insert_song(**song_factory(1))).value
                await library.db.add_song_to_playlist(pid, sid)
                deleted = await library.db.delete_playlist(pid)
                return deleted, await library.db.get_playlist_ids_for_song(sid), await library.db.get_song(sid)

        deleted, ids, song = run(scenario())
        assert deleted.value is True
        assert ids == set()
        assert song is not None


# ===========================================================================
# Write queue
# ===========================================================================


class TestWriteQueue:
    def test_tasks_run_in_submission_order(self):
        async def scenario():
            queue = WriteQueue()
            order = []

            def make(n, delay):
                async def task():
                    await asyncio.sleep(delay)
                    order.append(n)
                    return n

                return task

            results = await asyncio.gather(
                queue.submit(make(1, 0.05)),
                queue.submit(make(2, 0)),
                queue.submit(make(3, 0.01)),
            )
            await queue.close()
            return order, results

        order, results = run(scenario())
        assert order == [1, 2, 3]
        assert results == [1, 2, 3]

    def test_failed_task_does_not_block_the_next(self):
        async def scenario():
            queue = WriteQueue()

            async def boom():
                raise ValueError("disk on fire")

            async def ok():
                return "ok"

            results = await asyncio.gather(queue.submit(boom), queue.submit(ok), return_exceptions=True)
            await queue.close()
            return results

        failed, succeeded = run(scenario())
        assert isinstance(failed, ValueError)
        assert succeeded == "ok"

    def test_concurrent_inserts_all_land(self, open_library, song_factory):
        async def scenario():
            async with open_library() as library:
                await asyncio.gather(*(library.db.insert_song(**song_factory(n)) for n in range(20)))
                return await library.db.count_songs()

        assert run(scenario()) == 20

    def test_submit_after_close_is_rejected(self):
        async def scenario():
            queue = WriteQueue()
            await queue.close()

            async def task():
                return 1

            await queue.submit(task)

        with pytest.raises(RuntimeError):
            run(scenario())


# ===========================================================================
# Migrations
# ===========================================================================


class TestMigrations:
    def test_old_copy_gains_new_columns(self, open_library, tmp_path):
        db_path = tmp_path / "cache" / "flashtune.musicdb"
        db_path.parent.mkdir(parents=True)
        with sqlite3.connect(db_path) as conn:
            conn.execute(
                """
                CREATE TABLE songs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    artist TEXT NOT NULL,
                    album TEXT NOT NULL DEFAULT '',
                    source_url TEXT NOT NULL UNIQUE,
                    filename TEXT NOT NULL,
                    download_date TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "INSERT INTO songs (title, artist, source_url, filename, download_date) "
                "VALUES ('Old', 'Band', 'https://old', 'Band - Old.mp3', '2023-01-01')"
            )

        async def scenario():
            async with open_library() as library:
                return await library.db.get_all_songs()

        songs = run(scenario())
        assert songs[0]["title"] == "Old"
        assert songs[0]["duration_ms"] == 0
        assert songs[0]["cover_path"] == ""
