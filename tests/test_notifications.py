import pytest

from cartsync.notifications import Notifier


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_notifications_expire():
    clock = FakeClock()
    notifier = Notifier(ttl_seconds=3, clock=clock)
    notifier.add("Added Keyboard to cart")

    clock.now += 2
    assert [n.message for n in notifier.active()] == ["Added Keyboard to cart"]

    clock.now += 2
    assert notifier.active() == []


def test_user_sees_own_and_global_notifications():
    notifier = Notifier(ttl_seconds=3)
    notifier.add("Please log in to manage your cart", "warning")
    notifier.add("Added Keyboard to cart", "success", "user-1")
    notifier.add("Added Phone to cart", "success", "user-2")

    messages = [n.message for n in notifier.active("user-1")]

    assert messages == ["Please log in to manage your cart", "Added Keyboard to cart"]


def test_remove_and_unknown_type():
    notifier = Notifier(ttl_seconds=3)
    notification = notifier.add("Payment was cancelled", "info")
    notifier.remove(notification.id)

    assert notifier.active() == []
    with pytest.raises(ValueError):
        notifier.add("bad", "fatal")
