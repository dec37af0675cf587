from datetime import timedelta

import pytest

from atende.database import utcnow
from atende.models import Conversation
from atende.services.state_machine import (
    ConversationStatus,
    InvalidTransitionError,
    apply_transition,
    can_transition,
    sources_for,
    transition,
)


class TestValidTransitions:
    def test_open_to_ai_handling(self):
        assert transition(ConversationStatus.OPEN, ConversationStatus.AI_HANDLING) == ConversationStatus.AI_HANDLING

    def test_ai_handling_to_human_handling(self):
        result = transition(ConversationStatus.AI_HANDLING, ConversationStatus.HUMAN_HANDLING)
        assert result == ConversationStatus.HUMAN_HANDLING

    def test_waiting_response_back_to_ai(self):
        result = transition(ConversationStatus.WAITING_RESPONSE, ConversationStatus.AI_HANDLING)
        assert result == ConversationStatus.AI_HANDLING

    def test_every_open_state_can_close(self):
        for state in ConversationStatus:
            if state != ConversationStatus.CLOSED:
                assert can_transition(state, ConversationStatus.CLOSED) is True


class TestInvalidTransitions:
    def test_closed_is_terminal(self):
        for state in ConversationStatus:
            assert can_transition(ConversationStatus.CLOSED, state) is False

    def test_human_handling_cannot_wait_for_response(self):
        with pytest.raises(InvalidTransitionError):
            transition(ConversationStatus.HUMAN_HANDLING, ConversationStatus.WAITING_RESPONSE)

    def test_same_state(self):
        with pytest.raises(InvalidTransitionError):
            transition(ConversationStatus.AI_HANDLING, ConversationStatus.AI_HANDLING)


class TestSourcesFor:
    def test_sources_for_waiting_response(self):
        assert sources_for(ConversationStatus.WAITING_RESPONSE) == [ConversationStatus.AI_HANDLING]


class TestApplyTransition:
    def test_moves_when_state_matches(self, db, make_conversation):
        conversation = make_conversation(status="AI_HANDLING")

        moved = apply_transition(
            db, conversation.id, ConversationStatus.HUMAN_HANDLING, expected=(ConversationStatus.AI_HANDLING,)
        )
        db.commit()

        assert moved is True
        assert db.get(Conversation, conversation.id).status == "HUMAN_HANDLING"

    def test_noop_when_state_changed(self, db, make_conversation):
        conversation = make_conversation(status="HUMAN_HANDLING")

        moved = apply_transition(
            db, conversation.id, ConversationStatus.CLOSED, expected=(ConversationStatus.AI_HANDLING,)
        )

        assert moved is False
        assert db.get(Conversation, conversation.id).status == "HUMAN_HANDLING"

    def test_closing_sets_closed_at(self, db, make_conversation):
        conversation = make_conversation()

        apply_transition(db, conversation.id, ConversationStatus.CLOSED)
        db.commit()

        assert db.get(Conversation, conversation.id).closed_at is not None

    def test_unchanged_since_guards_against_new_messages(self, db, make_conversation):
        conversation = make_conversation(last_message_at=utcnow())

        moved = apply_transition(
            db,
            conversation.id,
            ConversationStatus.CLOSED,
            expected=(ConversationStatus.AI_HANDLING,),
            unchanged_since=utcnow() - timedelta(minutes=5),
        )

        assert moved is False

    def test_invalid_expected_transition_raises(self, db, make_conversation):
        conversation = make_conversation(status="CLOSED")

        with pytest.raises(InvalidTransitionError):
            apply_transition(
                db, conversation.id, ConversationStatus.AI_HANDLING, expected=(ConversationStatus.CLOSED,)
            )
