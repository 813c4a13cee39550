import threading

from nlbc import db
from nlbc.controller import Controller
from nlbc.ledger import Ledger, LoadBalancer
from nlbc.reconciler import Outcome, Reconciler, fatal, retry
from nlbc.workqueue import RetryPolicy, WorkQueue


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_retry_policy_backoff_and_budget():
    policy = RetryPolicy(base_delay_s=1, max_delay_s=10, max_attempts=5)
    assert [policy.delay(n) for n in range(1, 6)] == [1, 2, 4, 8, 10]
    assert not policy.gives_up(4)
    assert policy.gives_up(5)
    assert not RetryPolicy(max_attempts=0).gives_up(1000)


def test_queue_deduplicates_keys():
    q = WorkQueue()
    q.add("ns/a")
    q.add("ns/b")
    q.add("ns/a")
    assert len(q) == 2
    assert q.get(timeout=0) == "ns/a"
    assert q.get(timeout=0) == "ns/b"
    assert q.get(timeout=0) is None


def test_key_in_flight_is_not_handed_out_twice():
    q = WorkQueue()
    q.add("ns/a")
    assert q.get(timeout=0) == "ns/a"

    q.add("ns/a")
    assert q.get(timeout=0) is None

    q.done("ns/a")
    assert q.get(timeout=0) == "ns/a"


def test_delayed_add_waits_for_clock():
    clock = FakeClock()
    q = WorkQueue(clock=clock)
    q.add("ns/a", delay_s=5)
    assert q.get(timeout=0) is None
    clock.now += 5
    assert q.get(timeout=0) == "ns/a"


def test_shutdown_wakes_waiting_workers():
    q = WorkQueue()
    got = []
    t = threading.Thread(target=lambda: got.append(q.get()))
    t.start()
    q.shutdown()
    t.join(timeout=5)
    assert got == [None]


class ScriptedReconciler:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.seen = []
        self.ledger = Ledger([LoadBalancer("lb1", "lb1.example.com")])

    def reconcile(self, service):
        self.seen.append(service)
        result = self.outcomes.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeServices:
    def __init__(self, names):
        self.names = names

    def list_identities(self):
        return list(self.names), "42"


def _controller(outcomes, max_attempts=0):
    clock = FakeClock()
    rec = ScriptedReconciler(outcomes)
    ctl = Controller(
        rec,
        FakeServices(["ns/a"]),
        policy=RetryPolicy(base_delay_s=2, max_delay_s=60, max_attempts=max_attempts),
        queue=WorkQueue(clock=clock),
    )
    return ctl, rec, clock


def test_retry_outcome_requeues_with_backoff():
    ctl, rec, clock = _controller([retry("throttled"), retry("throttled"), Outcome("done")])
    ctl.queue.add("ns/a")

    assert ctl.process_one(timeout=0)
    assert ctl.attempts("ns/a") == 1
    assert not ctl.process_one(timeout=0)
    clock.now += 2
    assert ctl.process_one(timeout=0)
    clock.now += 3
    assert not ctl.process_one(timeout=0)
    clock.now += 1
    assert ctl.process_one(timeout=0)

    assert rec.seen == ["ns/a"] * 3
    assert ctl.attempts("ns/a") == 0


def test_fatal_outcome_is_not_retried():
    ctl, rec, clock = _controller([fatal("leaked listener")])
    ctl.queue.add("ns/a")

    ctl.process_one(timeout=0)
    clock.now += 1000

    assert not ctl.process_one(timeout=0)
    assert any(e["level"] == "CRITICAL" for e in db.latest_events(service_name="ns/a"))


def test_retry_budget_is_respected():
    ctl, rec, clock = _controller([retry("x"), retry("x")], max_attempts=2)
    ctl.queue.add("ns/a")

    ctl.process_one(timeout=0)
    clock.now += 2
    ctl.process_one(timeout=0)
    clock.now += 1000

    assert not ctl.process_one(timeout=0)
    assert rec.seen == ["ns/a", "ns/a"]
    assert "Giving up" in db.latest_events(1)[0]["message"]


def test_crashing_pass_is_retried():
    ctl, rec, clock = _controller([RuntimeError("boom"), Outcome("done")])
    ctl.queue.add("ns/a")

    ctl.process_one(timeout=0)
    clock.now += 2
    ctl.process_one(timeout=0)

    assert rec.seen == ["ns/a", "ns/a"]


def test_enqueue_all_includes_ledger_and_cluster():
    ctl, rec, _ = _controller([])
    rec.ledger.find_free_slot("ns/deleted-while-down")

    assert ctl.enqueue_all() == "42"

    keys = {ctl.queue.get(timeout=0), ctl.queue.get(timeout=0)}
    assert keys == {"ns/a", "ns/deleted-while-down"}


def test_controller_drives_real_reconciler(make_reconciler, cluster, provider):
    rec = make_reconciler()
    cluster.add("ns/a")
    ctl = Controller(rec, FakeServices(["ns/a"]), queue=WorkQueue())
    ctl.enqueue_all()

    while ctl.process_one(timeout=0):
        pass

    assert isinstance(rec, Reconciler)
    assert rec.ledger.get("ns/a").slot == ("lb1", 9000)
