from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Set

import pytest

# Ensure project root on path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from qrcheckin.config import DEFAULT_EMAIL_TEMPLATE
from qrcheckin.notifier import BatchNotifier, load_template, render_template
from qrcheckin.qr import QREncoder
from qrcheckin.schemas import EmailOptions, Participant
from qrcheckin.tokens import TokenService
from tests.fakes import FlakyTransport, SleepRecorder


TEMPLATE = "<p>{{name}} / {{company}} / {{eventName}} / {{unknownField}}</p><img src=\"{{qrDataUri}}\"><a href=\"{{checkinUrl}}\">go</a>"


def _participants(n: int) -> List[Participant]:
    return [Participant(name=f"P{i}", email=f"p{i}@x.com", company="ACME" if i == 0 else None) for i in range(n)]


def _notifier(
    transport: FlakyTransport,
    sleep: SleepRecorder,
    rate: float = 4.0,
    encoder: Optional[QREncoder] = None,
) -> BatchNotifier:
    tokens = TokenService("test-secret", current_event_id="meet-2024")
    return BatchNotifier(
        encoder=encoder or QREncoder(tokens, "http://checkin.test"),
        transport=transport,
        template=TEMPLATE,
        event_id="meet-2024",
        sender="Event System <noreply@x.com>",
        rate_limit_per_sec=rate,
        sleep=sleep,
    )


def _options(**overrides) -> EmailOptions:
    data = {"eventName": "Meetup 2024", "subject": "Your ticket for {{eventName}}"}
    data.update(overrides)
    return EmailOptions(**data)


def test_batch_continues_past_one_failure() -> None:
    transport = FlakyTransport(fail_for={"p2@x.com"})
    sleep = SleepRecorder()
    notifier = _notifier(transport, sleep)

    results = asyncio.run(notifier.send_batch(_participants(5), _options()))

    assert [r.email for r in results] == [f"p{i}@x.com" for i in range(5)]
    assert [r.success for r in results] == [True, True, False, True, True]
    assert "550" in (results[2].error or "")
    assert len(transport.sent) == 4
    assert notifier.stats.attempted == 5
    assert notifier.stats.succeeded == 4
    assert notifier.stats.success_rate == 80.0


def test_fixed_delay_between_sends_only() -> None:
    sleep = SleepRecorder()
    notifier = _notifier(FlakyTransport(), sleep, rate=4.0)
    asyncio.run(notifier.send_batch(_participants(3), _options()))
    assert sleep.delays == [0.25, 0.25]


def test_test_mode_truncates_to_three() -> None:
    transport = FlakyTransport()
    notifier = _notifier(transport, SleepRecorder())
    results = asyncio.run(notifier.send_batch(_participants(10), _options(testMode=True)))
    assert len(results) == 3
    assert [m["To"] for m in transport.sent] == ["p0@x.com", "p1@x.com", "p2@x.com"]


def test_message_rendering_and_attachment() -> None:
    transport = FlakyTransport()
    notifier = _notifier(transport, SleepRecorder())
    asyncio.run(notifier.send_batch(_participants(1), _options(attachPng=True)))

    message = transport.sent[0]
    assert message["Subject"] == "Your ticket for Meetup 2024"
    assert message["From"] == "Event System <noreply@x.com>"
    html = message.get_body(preferencelist=("html",)).get_content()
    assert "P0 / ACME / Meetup 2024 / </p>" in html
    assert "data:image/png;base64," in html
    assert "http://checkin.test/checkin?token=" in html
    attachments = list(message.iter_attachments())
    assert [a.get_filename() for a in attachments] == ["qr-code.png"]
    assert attachments[0].get_content().startswith(b"\x89PNG")


def test_no_attachment_by_default() -> None:
    transport = FlakyTransport()
    notifier = _notifier(transport, SleepRecorder())
    asyncio.run(notifier.send_batch(_participants(1), _options()))
    assert list(transport.sent[0].iter_attachments()) == []


def test_send_one_ignores_test_mode_and_reports_failure() -> None:
    transport = FlakyTransport(fail_for={"p0@x.com"})
    notifier = _notifier(transport, SleepRecorder())
    result = asyncio.run(notifier.send_one(_participants(1)[0], _options(testMode=True)))
    assert result.email == "p0@x.com"
    assert result.success is False


def test_verify_transport() -> None:
    assert asyncio.run(_notifier(FlakyTransport(), SleepRecorder()).verify_transport()) is True
    assert asyncio.run(_notifier(FlakyTransport({"x"}), SleepRecorder()).verify_transport()) is False


def test_render_template_literal_and_blank_unknowns() -> None:
    out = render_template("{{a}}-{{a}}-{{b}}-{{ c }}", {"a": "1", "b": ""})
    assert out == "1-1--"
    # values are not re-interpreted as regex
    assert render_template("{{a}}", {"a": "$1 \\g<0>"}) == "$1 \\g<0>"


def test_default_template_uses_all_placeholders() -> None:
    template = load_template(DEFAULT_EMAIL_TEMPLATE)
    for key in ["eventName", "eventDate", "eventLocation", "name", "email", "company", "title", "qrDataUri", "checkinUrl", "additionalInfo"]:
        assert "{{" + key + "}}" in template


@pytest.mark.parametrize("rate", [0, -1])
def test_settings_reject_non_positive_rate(rate: float) -> None:
    from pydantic import ValidationError

    from qrcheckin.config import Settings

    with pytest.raises(ValidationError):
        Settings(smtp_rate_limit_per_sec=rate)


class FailingEncoder(QREncoder):
    def __init__(self, fail_for: Set[str]) -> None:
        super().__init__(TokenService("test-secret", current_event_id="meet-2024"), "http://checkin.test")
        self.fail_for = fail_for

    def encode(self, event_id: str, email: str, name: Optional[str] = None):
        if email in self.fail_for:
            raise ValueError("data too long for a QR symbol")
        return super().encode(event_id, email, name)


def test_qr_failure_is_recorded_per_participant() -> None:
    transport = FlakyTransport()
    notifier = _notifier(transport, SleepRecorder(), encoder=FailingEncoder({"p1@x.com"}))

    results = asyncio.run(notifier.send_batch(_participants(4), _options()))

    assert len(results) == 4
    assert [r.success for r in results] == [True, False, True, True]
    assert results[1].error == "data too long for a QR symbol"
    assert [m["To"] for m in transport.sent] == ["p0@x.com", "p2@x.com", "p3@x.com"]


def test_mailed_token_is_for_the_configured_event() -> None:
    transport = FlakyTransport()
    notifier = _notifier(transport, SleepRecorder())
    # an eventId in the request body is not an option and is ignored
    options = EmailOptions(eventName="E", subject="s", eventId="other-event")
    results = asyncio.run(notifier.send_batch(_participants(1), options))
    assert results[0].success is True

    html = transport.sent[0].get_body(preferencelist=("html",)).get_content()
    token = html.split("/checkin?token=", 1)[1].split('"', 1)[0]
    payload = notifier.encoder.tokens.verify(token)
    assert payload is not None
    assert payload.event_id == "meet-2024"


def test_render_template_does_not_rescan_values() -> None:
    values = {"name": "{{email}}", "email": "a@x.com", "company": "{{x}}"}
    assert render_template("{{name}} <{{email}}> {{company}}", values) == "{{email}} <a@x.com> {{x}}"


def test_participant_fields_escaped_in_html_only() -> None:
    transport = FlakyTransport()
    notifier = _notifier(transport, SleepRecorder())
    evil = Participant(name="<b>Eve</b>", email="eve@x.com", company="R&D")
    asyncio.run(notifier.send_batch([evil], _options(subject="Hi {{name}}")))

    message = transport.sent[0]
    assert message["Subject"] == "Hi <b>Eve</b>"
    html = message.get_body(preferencelist=("html",)).get_content()
    assert "&lt;b&gt;Eve&lt;/b&gt; / R&amp;D / Meetup 2024" in html
    assert "<b>Eve</b>" not in html


def test_insecure_defaults_reported() -> None:
    from qrcheckin.config import Settings

    assert Settings(jwt_secret="default-secret", admin_pass="change-me").insecure_defaults() == [
        "APP_JWT_SECRET",
        "APP_ADMIN_PASS",
    ]
    assert Settings(jwt_secret="s3cret", admin_pass="change-me").insecure_defaults() == ["APP_ADMIN_PASS"]
    assert Settings(jwt_secret="s3cret", admin_pass="p4ss").insecure_defaults() == []
