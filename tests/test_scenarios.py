"""
End-to-end games: one host and two players sharing a store, run once per store strategy.
"""

import pytest

from context import Identity
from errors import AlreadyAnsweredError, GameNotActiveError, SessionNotJoinableError, StoreConflictError


async def seat_players(make_player, game_store, pin):
    alice = make_player(game_store=game_store)
    bob = make_player(game_store=game_store)
    await alice.join(pin, "Alice")
    await bob.join(pin, "Bob")
    return alice, bob


class TestScenarios:

    @pytest.mark.asyncio
    async def test_full_game(self, make_host, make_player, game_store):
        host = await make_host(game_store=game_store)
        assert host.session.status == 'waiting'
        alice, bob = await seat_players(make_player, game_store, host.quiz.game_pin)

        session = await host.start_game()
        assert (session.status, session.current_question_index) == ('active', 0)

        await alice.refresh()
        await bob.refresh()
        assert alice.view().question.question_index == 0
        await alice.submit_answer("b")
        await bob.submit_answer("a")

        await host.refresh()
        assert host.view().question_stats.answered_count == 2
        host.show_answer()
        session = await host.advance()
        assert session.current_question_index == 1

        await alice.refresh()
        await bob.refresh()
        assert bob.view().question.question_index == 1
        await alice.submit_answer("False")
        await bob.submit_answer("False")

        session = await host.end_game()
        assert session.status == 'completed'
        await host.refresh()
        assert [(e.player_name, e.score) for e in host.view().leaderboard] == [("Alice", 10), ("Bob", 0)]

        await alice.refresh()
        view = alice.view()
        assert view.game_ended
        assert [e.score for e in view.leaderboard] == [10, 0]
        assert view.time_left is None

        # Results are frozen
        await bob.refresh()
        assert bob.game_ended
        with pytest.raises(GameNotActiveError):
            await bob.submit_answer("True")
        with pytest.raises(StoreConflictError):
            await game_store.update_session(host.session_id, {'current_question_index': 0})
        with pytest.raises(SessionNotJoinableError):
            await make_player(game_store=game_store).join(host.quiz.game_pin, "Carol")
        assert (await game_store.get_player_session(bob.player.id)).score == 0

    @pytest.mark.asyncio
    async def test_auto_advance_game(self, make_host, make_player, game_store, wait_until):
        host = await make_host(game_store=game_store)
        alice, bob = await seat_players(make_player, game_store, host.quiz.game_pin)
        await host.start_game()
        host.enable_auto_advance(0.05)
        host.start()

        await alice.refresh()
        await bob.refresh()
        await alice.submit_answer("b")
        await bob.submit_answer("b")

        await wait_until(lambda: host.current_question_index == 1)
        # Give the host several more polls; it must not skip past question 1
        polls = host.poller.tick_count
        await wait_until(lambda: host.poller.tick_count >= polls + 5)
        session = await game_store.get_session(host.session_id)
        assert session.current_question_index == 1
        assert session.status == 'active'

        await alice.refresh()
        assert alice.view().question.question_index == 1
        assert not alice.has_answered

    @pytest.mark.asyncio
    async def test_reload_resumes_answered_question(self, make_host, make_player, game_store):
        host = await make_host(game_store=game_store)
        identity = Identity(user_id="user-a", display_name="Ada")
        before = make_player(identity=identity, game_store=game_store)
        row = await before.join(host.quiz.game_pin, "Ada")
        await host.start_game()
        await before.refresh()
        await before.submit_answer("b")
        await before.leave()

        # Page reload: a fresh controller resumes the stored participation
        after = make_player(identity=identity, game_store=game_store)
        await after.rehydrate(row.id)
        view = after.view()
        assert view.has_answered
        assert view.selected_answer == "b"
        assert view.score == 10

        with pytest.raises(AlreadyAnsweredError):
            await after.submit_answer("a")
        stored = await game_store.get_player_session(row.id)
        assert len(stored.answers) == 1
        assert stored.score == 10

        # Rejoining with the same identity lands on the same row in the same state
        rejoined = make_player(identity=identity, game_store=game_store)
        assert (await rejoined.join(host.quiz.game_pin, "Ada")).id == row.id
        assert rejoined.has_answered
