import asyncio
import json
from datetime import datetime, timezone

import httpx

from domain.schemas import NotificationMeta, NotificationPayload, SignupUser
from notify.failed_queue import FailedQueue
from notify.queue import NotificationQueue
from notify.teams import build_signup_payload, format_timestamp

WEBHOOK = "https://hooks.example/teams"


def _payload(cid="corr-1"):
    return NotificationPayload(body={"text": "hello"}, meta=NotificationMeta(type="user_signup", correlation_id=cid))


class Webhook:
    """Handler cho httpx.MockTransport: trả lần lượt các status trong `statuses`."""

    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(json.loads(request.content))
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, text="boom" if status >= 400 else "1")


def _run(queue: NotificationQueue, *payloads):
    async def run():
        for p in payloads:
            queue.enqueue(p)
        await asyncio.wait_for(queue.join(), timeout=5)
        await queue.shutdown()

    asyncio.run(run())


def test_three_failures_append_exactly_one_entry(tmp_path):
    hook = Webhook(500, 500, 500)
    failed = FailedQueue(str(tmp_path / "failed.json"))
    queue = NotificationQueue(WEBHOOK, failed, retry_delay_sec=0, max_retries=2, transport=httpx.MockTransport(hook))

    _run(queue, _payload())

    assert len(hook.calls) == 3
    assert hook.calls[0] == {"text": "hello"}
    entries = failed.read_all_sync()
    assert len(entries) == 1
    assert entries[0].retries_exhausted == 3
    assert entries[0].payload.meta.correlation_id == "corr-1"
    assert queue._timers == {}


def test_success_after_retry_writes_nothing(tmp_path):
    hook = Webhook(503, 200)
    failed = FailedQueue(str(tmp_path / "failed.json"))
    queue = NotificationQueue(WEBHOOK, failed, retry_delay_sec=0, transport=httpx.MockTransport(hook))

    _run(queue, _payload())

    assert len(hook.calls) == 2
    assert not (tmp_path / "failed.json").exists()


def test_network_error_counts_as_failed_attempt(tmp_path):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    failed = FailedQueue(str(tmp_path / "failed.json"))
    queue = NotificationQueue(WEBHOOK, failed, retry_delay_sec=0, max_retries=1, transport=httpx.MockTransport(handler))

    _run(queue, _payload("a"), _payload("b"))

    entries = failed.read_all_sync()
    assert sorted(e.payload.meta.correlation_id for e in entries) == ["a", "b"]
    assert all(e.retries_exhausted == 2 for e in entries)


def test_missing_webhook_url_goes_to_failed_queue(tmp_path):
    failed = FailedQueue(str(tmp_path / "failed.json"))
    queue = NotificationQueue(None, failed, retry_delay_sec=0)

    _run(queue, _payload())

    assert len(failed.read_all_sync()) == 1


def test_shutdown_parks_pending_retries(tmp_path):
    hook = Webhook(500)
    failed = FailedQueue(str(tmp_path / "failed.json"))
    queue = NotificationQueue(WEBHOOK, failed, retry_delay_sec=3600, transport=httpx.MockTransport(hook))

    async def run():
        queue.enqueue(_payload())
        for _ in range(50):
            if queue._timers:
                break
            await asyncio.sleep(0.01)
        await queue.shutdown()

    asyncio.run(run())

    assert len(hook.calls) == 1
    entries = failed.read_all_sync()
    assert len(entries) == 1
    assert entries[0].retries_exhausted == 1


def test_failed_queue_appends_preserve_existing(tmp_path):
    failed = FailedQueue(str(tmp_path / "nested" / "failed.json"))
    failed.append_sync(_payload("x"), 3)
    failed.append_sync(_payload("y"), 3)

    raw = json.loads((tmp_path / "nested" / "failed.json").read_text(encoding="utf-8"))
    assert [e["payload"]["meta"]["correlation_id"] for e in raw] == ["x", "y"]
    assert asyncio.run(failed.count()) == 2


def test_failed_queue_concurrent_appends_keep_every_entry(tmp_path):
    failed = FailedQueue(str(tmp_path / "failed.json"))

    async def run():
        await asyncio.gather(*(failed.append(_payload(f"c{i}"), 3) for i in range(30)))
        return await failed.read_all()

    entries = asyncio.run(run())
    assert sorted(e.payload.meta.correlation_id for e in entries) == sorted(f"c{i}" for i in range(30))
    assert asyncio.run(failed.count()) == 30


def test_failed_queue_count_missing_file(tmp_path):
    assert asyncio.run(FailedQueue(str(tmp_path / "none.json")).count()) == 0


def test_signup_card():
    user = SignupUser(id="42", username="nva", email="a+b@example.com", full_name=None)
    now = datetime(2024, 1, 1, 17, 30, 0, tzinfo=timezone.utc)

    payload = build_signup_payload(user, "https://app.example/", now=now)

    content = payload.body["attachments"][0]["content"]
    facts = {f["title"]: f["value"] for f in content["body"][1]["facts"]}
    assert facts["Username:"] == "nva"
    assert facts["Full Name:"] == "Not provided"
    assert facts["Timestamp:"] == "02/01/2024 00:30:00"
    actions = content["actions"]
    assert actions[0]["url"] == "https://app.example/pages/admin-panel.html?action=approve&email=a%2Bb%40example.com"
    assert actions[1]["url"] == "https://app.example/pages/admin-panel.html"
    assert payload.meta.type == "user_signup"
    assert payload.meta.extra["user_id"] == "42"


def test_format_timestamp_naive_is_utc():
    assert format_timestamp(datetime(2024, 6, 1, 0, 0, 0)) == "01/06/2024 07:00:00"
