"""Tests for mention detection and the delegation router."""

import pytest

from lumi.services.delegation import DelegationRouter, find_mentioned_peers, strip_eof_marker
from tests.conftest import make_agent


@pytest.fixture
def team():
    return [make_agent("Alice"), make_agent("Bob"), make_agent("Carol")]


class TestEofMarker:
    """Tests for stripping the silence marker."""

    def test_strips_any_case_and_trims(self):
        """Test that the marker is removed wherever it appears."""
        assert strip_eof_marker("  Done here. [EOF] ") == "Done here."
        assert strip_eof_marker("[eof]") == ""
        assert strip_eof_marker("no marker") == "no marker"


class TestMentions:
    """Tests for @Name detection."""

    def test_mentions_in_participant_order(self, team):
        """Test that peers are returned in participant order, not text order."""
        alice, bob, carol = team

        peers = find_mentioned_peers("@carol please check, then @Bob", alice.id, team)

        assert peers == [bob, carol]

    def test_speaker_is_never_mentioned(self, team):
        """Test that an agent mentioning itself does not hand off to itself."""
        alice = team[0]

        assert find_mentioned_peers("I am @Alice", alice.id, team) == []

    def test_no_mentions(self, team):
        """Test that plain text yields no peers."""
        assert find_mentioned_peers("Hello everyone", team[0].id, team) == []


class TestDelegationRouter:
    """Tests for planning hand-offs within the depth budget."""

    def test_plan_returns_mentioned_peers(self, team):
        """Test that mentioned peers are planned."""
        alice, bob, _ = team

        assert DelegationRouter().plan("@Bob over to you", alice, team, depth=0) == [bob]

    def test_single_agent_never_delegates(self, team):
        """Test that a one-participant conversation has no peers to plan."""
        alice = team[0]

        assert DelegationRouter().plan("@Bob", alice, [alice], depth=0) == []

    def test_eof_reply_plans_nothing(self, team):
        """Test that a silent reply does not hand off."""
        assert DelegationRouter().plan("[eof]", team[0], team, depth=0) == []

    def test_budget_trims_targets(self, team):
        """Test that planning stops at the depth limit."""
        alice = team[0]
        router = DelegationRouter(depth_limit=3)

        assert len(router.plan("@Bob @Carol", alice, team, depth=0)) == 2
        assert len(router.plan("@Bob @Carol", alice, team, depth=2)) == 1
        assert router.plan("@Bob @Carol", alice, team, depth=3) == []
        assert router.is_exhausted(3)
        assert router.remaining(5) == 0

    def test_negative_limit_rejected(self):
        """Test that a negative depth limit is a configuration error."""
        with pytest.raises(ValueError):
            DelegationRouter(depth_limit=-1)
