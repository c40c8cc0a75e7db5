"""
Tests for the domain event dispatcher
"""

import logging
import threading

import pytest

from loan_lifecycle.events import DomainEvent, EventDispatcher, EventPayload


@pytest.fixture
def dispatcher():
    return EventDispatcher()


class TestEventDispatcher:
    """Test publish/subscribe behaviour"""

    def test_subscribe_and_emit(self, dispatcher):
        received = []
        dispatcher.subscribe(DomainEvent.LOAN_ISSUED, received.append)

        event = dispatcher.emit(DomainEvent.LOAN_ISSUED, "loan", "L1", {"amount": "12000"})

        assert received == [event]
        assert event.data == {"amount": "12000"}

    def test_only_matching_handlers_are_called(self, dispatcher):
        received = []
        dispatcher.subscribe(DomainEvent.CONTRACT_SIGNED, received.append)
        dispatcher.emit(DomainEvent.CONTRACT_SENT, "contract", "C1")
        assert received == []

    def test_subscribe_all(self, dispatcher):
        received = []
        dispatcher.subscribe_all(received.append)
        dispatcher.emit(DomainEvent.DOCUMENT_UPLOADED, "document", "D1")
        dispatcher.emit(DomainEvent.DOCUMENT_VERIFIED, "document", "D1")
        assert [e.event_type for e in received] == [
            DomainEvent.DOCUMENT_UPLOADED, DomainEvent.DOCUMENT_VERIFIED
        ]

    def test_handler_errors_are_isolated(self, dispatcher, caplog):
        received = []

        def broken(event):
            raise RuntimeError("handler failure")

        dispatcher.subscribe(DomainEvent.LOAN_COMPLETED, broken)
        dispatcher.subscribe(DomainEvent.LOAN_COMPLETED, received.append)

        with caplog.at_level(logging.ERROR, logger="lendflow.events"):
            dispatcher.emit(DomainEvent.LOAN_COMPLETED, "loan", "L1")

        assert len(received) == 1
        assert "handler failure" in caplog.text

    def test_unsubscribe(self, dispatcher):
        received = []
        dispatcher.subscribe(DomainEvent.LOAN_PAYMENT, received.append)
        dispatcher.unsubscribe(DomainEvent.LOAN_PAYMENT, received.append)
        dispatcher.emit(DomainEvent.LOAN_PAYMENT, "loan", "L1")

        assert received == []
        assert dispatcher.get_handler_count(DomainEvent.LOAN_PAYMENT) == 0

    def test_handler_counts_and_clear(self, dispatcher):
        dispatcher.subscribe(DomainEvent.LOAN_ISSUED, lambda e: None)
        dispatcher.subscribe(DomainEvent.LOAN_REJECTED, lambda e: None)
        dispatcher.subscribe_all(lambda e: None)

        assert dispatcher.get_handler_count(DomainEvent.LOAN_ISSUED) == 1
        assert dispatcher.get_handler_count() == 3

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0

    def test_handlers_may_publish(self, dispatcher):
        """Test handlers run outside the dispatcher lock"""
        received = []

        def chain(event):
            dispatcher.emit(DomainEvent.CONTRACT_SIGNED, "contract", "C1")

        dispatcher.subscribe(DomainEvent.LOAN_ACTIVATED, chain)
        dispatcher.subscribe(DomainEvent.CONTRACT_SIGNED, received.append)

        thread = threading.Thread(target=dispatcher.emit, args=(DomainEvent.LOAN_ACTIVATED, "loan", "L1"))
        thread.start()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert len(received) == 1


class TestEventPayload:
    def test_to_dict(self):
        payload = EventPayload(DomainEvent.APPLICATION_APPROVED, "application", "A1", {"loan_id": "L1"})
        data = payload.to_dict()

        assert data["event_type"] == "application.approved"
        assert data["entity_id"] == "A1"
        assert data["data"] == {"loan_id": "L1"}
        assert data["event_id"] == payload.event_id
