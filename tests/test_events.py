from events import (
    AccountBalancesChanged,
    EventBus,
    TransactionAction,
    TransactionsChanged,
)


def test_subscribers_receive_only_their_event_type() -> None:
    bus = EventBus()
    seen: list[object] = []
    bus.subscribe(TransactionsChanged, seen.append)

    event = TransactionsChanged(action=TransactionAction.update, id="t1")
    assert bus.publish(event) == 1
    assert bus.publish(AccountBalancesChanged()) == 0
    assert seen == [event]


def test_unsubscribe_and_once() -> None:
    bus = EventBus()
    seen: list[object] = []
    unsubscribe = bus.subscribe(AccountBalancesChanged, seen.append)
    bus.once(AccountBalancesChanged, seen.append)

    bus.publish(AccountBalancesChanged())
    bus.publish(AccountBalancesChanged())
    unsubscribe()
    bus.publish(AccountBalancesChanged())

    assert len(seen) == 3


def test_failing_handler_does_not_stop_others() -> None:
    bus = EventBus()
    seen: list[object] = []

    def broken(event) -> None:
        raise RuntimeError("screen closed")

    bus.subscribe(AccountBalancesChanged, broken)
    bus.subscribe(AccountBalancesChanged, seen.append)

    assert bus.publish(AccountBalancesChanged()) == 2
    assert seen == [AccountBalancesChanged()]
