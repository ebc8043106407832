# pylint: disable=missing-module-docstring,missing-function-docstring,missing-class-docstring,protected-access
# pylint: disable=unused-argument,too-few-public-methods,no-member,use-implicit-booleaness-not-comparison,line-too-long
# pylint: disable=invalid-name,too-many-statements,too-many-instance-attributes,wrong-import-position,wrong-import-order
# pylint: disable=deprecated-module,too-many-locals,too-many-lines,attribute-defined-outside-init,unexpected-keyword-arg
# pylint: disable=duplicate-code
import logging

from helpers import make_scheduler


def test_earliest_request_wins_unless_replace():
    scheduler, _timer, clock = make_scheduler()
    task = scheduler.new_task("t", "owner", lambda t: None)

    task.delay(10)
    assert task.when == clock() + 10
    task.delay(5)
    assert task.when == clock() + 5
    task.delay(20)
    assert task.when == clock() + 5

    task.delay(20, replace=True)
    assert task.when == clock() + 20
    assert scheduler.next_wake == clock() + 20


def test_earlier_wake_rearms_timer_and_stale_fire_is_ignored():
    scheduler, timer, _clock = make_scheduler()
    ran = []
    a = scheduler.new_task("a", "o", lambda t: ran.append("a"))
    b = scheduler.new_task("b", "o", lambda t: ran.append("b"))

    a.delay(10)
    assert scheduler.generation == 1
    first = timer.handles[0]

    b.delay(5)
    assert scheduler.generation == 2
    assert first.cancelled

    # A fire from the superseded timer does nothing.
    first.callback()
    assert ran == []
    assert a.armed and b.armed

    timer.run_for(5)
    assert ran == ["b"]
    timer.run_for(5)
    assert ran == ["b", "a"]


def test_later_wake_does_not_rearm():
    scheduler, timer, _clock = make_scheduler()
    a = scheduler.new_task("a", "o", lambda t: None)
    b = scheduler.new_task("b", "o", lambda t: None)
    a.delay(5)
    b.delay(50)
    assert scheduler.generation == 1
    assert len(timer.live) == 1


def test_due_tasks_run_in_wake_order():
    scheduler, timer, clock = make_scheduler()
    ran = []
    for name, delay in (("late", 3), ("early", 1), ("mid", 2)):
        scheduler.new_task(name, "o", lambda t, n=name: ran.append(n)).delay(delay)

    # Let everything become due before the single fire.
    clock.advance(5)
    timer.run_until(clock())
    assert ran == ["early", "mid", "late"]


def test_task_is_disarmed_before_callback():
    scheduler, timer, _clock = make_scheduler()
    seen = []
    task = scheduler.new_task("t", "o", lambda t: seen.append(t.when))
    task.delay(1)
    timer.run_for(1)
    assert seen == [None]
    assert not task.armed
    assert scheduler.next_wake is None


def test_callback_can_rearm_itself():
    scheduler, timer, _clock = make_scheduler()
    count = []

    def cb(task):
        count.append(1)
        if len(count) < 3:
            task.delay(2)

    scheduler.new_task("t", "o", cb).delay(0)
    timer.run_for(10)
    assert len(count) == 3


def test_callback_exception_is_logged_and_dispatch_continues(caplog):
    scheduler, timer, _clock = make_scheduler()
    ran = []

    def boom(task):
        raise RuntimeError("boom")

    scheduler.new_task("bad", "o", boom).delay(1)
    scheduler.new_task("good", "o", lambda t: ran.append(1)).delay(1)

    with caplog.at_level(logging.ERROR):
        timer.run_for(1)

    assert ran == [1]
    assert "Task bad raised" in caplog.text


def test_task_args_are_passed():
    scheduler, timer, _clock = make_scheduler()
    got = []
    scheduler.new_task("t", "o", lambda t, a, b: got.append((t.id, a, b)), 1, "x").delay(0)
    timer.run_for(0)
    assert got == [("t", 1, "x")]


def test_new_task_with_same_id_closes_old():
    scheduler, _timer, _clock = make_scheduler()
    old = scheduler.new_task("t", "o", lambda t: None)
    new = scheduler.new_task("t", "o", lambda t: None)
    assert old.closed
    assert scheduler.get_task("t") is new
    old.delay(1)
    assert old.when is None


def test_suspend_and_close_owner():
    scheduler, timer, _clock = make_scheduler()
    ran = []
    a = scheduler.new_task("gw1:tick", "gw1", lambda t: ran.append("a"))
    b = scheduler.new_task("gw1:recv", "gw1", lambda t: ran.append("b"))
    c = scheduler.new_task("gw2:tick", "gw2", lambda t: ran.append("c"))
    for task in (a, b, c):
        task.delay(1)

    b.suspend()
    assert not b.armed and not b.closed

    assert scheduler.close_owner("gw1") == 2
    assert a.closed and b.closed
    assert scheduler.tasks_for("gw1") == []

    timer.run_for(1)
    assert ran == ["c"]


def test_shutdown_disarms_timer():
    scheduler, timer, _clock = make_scheduler()
    scheduler.new_task("t", "o", lambda t: None).delay(1)
    scheduler.shutdown()
    assert scheduler.next_wake is None
    assert timer.live == []
