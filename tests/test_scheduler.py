from __future__ import annotations


def test_manual_scheduler_runs_in_due_order() -> None:
    from agent_panel.scheduler import ManualScheduler

    sched = ManualScheduler()
    ran: list[str] = []
    sched.call_later(2.0, lambda: ran.append("late"))
    sched.call_later(1.0, lambda: ran.append("early"))
    sched.call_later(1.0, lambda: ran.append("early-2"))

    assert sched.pending == 3
    assert sched.advance(1.5) == 2
    assert ran == ["early", "early-2"]
    assert sched.now == 1.5
    assert sched.run_all() == 1
    assert ran[-1] == "late"
    assert sched.now == 2.0


def test_callbacks_can_schedule_more() -> None:
    from agent_panel.scheduler import ManualScheduler

    sched = ManualScheduler()
    ran: list[float] = []

    def first() -> None:
        ran.append(sched.now)
        sched.call_later(0.5, lambda: ran.append(sched.now))

    sched.call_later(1.0, first)
    sched.advance(2.0)
    assert ran == [1.0, 1.5]
