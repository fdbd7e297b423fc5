import smtplib

from video_uploader.services.notifier import EmailNotifier, human_bytes


class FakeSMTP:
    sent = []
    fail = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.tls = False
        self.logged_in = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.tls = True

    def login(self, username, password):
        self.logged_in = (username, password)

    def send_message(self, msg):
        if FakeSMTP.fail:
            raise smtplib.SMTPServerDisconnected("connection dropped")
        FakeSMTP.sent.append((self, msg))


def _reset(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.fail = False
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)


def test_human_bytes():
    assert human_bytes(0) == "0 B"
    assert human_bytes(1536) == "1.5 KB"
    assert human_bytes(10 * 1024 * 1024) == "10 MB"


def test_notifier_disabled_without_configuration(monkeypatch):
    _reset(monkeypatch)
    notifier = EmailNotifier("", host="smtp.example.com")
    assert not notifier.enabled
    assert notifier.notify_upload_failed(file_id="f", file_name="a.mp4", error="boom") is False
    assert FakeSMTP.sent == []


def test_completion_email_contents(monkeypatch):
    _reset(monkeypatch)
    notifier = EmailNotifier(
        "admin@example.com", host="smtp.example.com", username="mailer", password="pw", use_tls=True
    )
    assert notifier.notify_upload_complete(
        file_id="f1",
        file_name="<holiday>.mp4",
        file_size=2048,
        download_url="http://testserver/download/f1",
        ip="203.0.113.7",
        uploader="user@example.com",
    )

    server, msg = FakeSMTP.sent[0]
    assert server.tls and server.logged_in == ("mailer", "pw")
    assert msg["To"] == "admin@example.com"
    assert msg["Subject"] == "New video upload: <holiday>.mp4"
    text, html_part = msg.get_payload()
    assert "2 KB" in text.get_payload(decode=True).decode()
    assert "&lt;holiday&gt;.mp4" in html_part.get_payload(decode=True).decode()


def test_smtp_failure_is_reported_not_raised(monkeypatch):
    _reset(monkeypatch)
    FakeSMTP.fail = True
    notifier = EmailNotifier("admin@example.com", host="smtp.example.com", use_tls=False)
    assert notifier.notify_upload_failed(file_id="f", file_name="a.mp4", error="boom") is False


def test_upload_triggers_completion_email(make_client, monkeypatch):
    _reset(monkeypatch)
    with make_client(ADMIN_EMAIL="admin@example.com", SMTP_HOST="smtp.example.com", SMTP_USE_TLS="false") as c:
        response = c.post("/upload", content=b"frames", headers={"x-file-name": "trip.mp4"})
        assert response.status_code == 200

    assert len(FakeSMTP.sent) == 1
    _, msg = FakeSMTP.sent[0]
    assert msg["Subject"] == "New video upload: trip.mp4"


def test_failed_completion_sends_failure_email(make_client, monkeypatch):
    _reset(monkeypatch)
    with make_client(
        ADMIN_EMAIL="admin@example.com",
        SMTP_HOST="smtp.example.com",
        SMTP_USE_TLS="false",
        STORAGE_MIN_PART_SIZE="1024",
    ) as c:
        session = c.post("/upload/multipart", json={"fileName": "fail.mp4"}).json()
        c.put(f"/upload/part?fileId={session['fileId']}&partNumber=1", content=b"tiny")
        c.put(f"/upload/part?fileId={session['fileId']}&partNumber=2", content=b"end")
        response = c.post("/upload/complete", json={"fileId": session["fileId"]})
        assert response.status_code == 500

    subjects = [msg["Subject"] for _, msg in FakeSMTP.sent]
    assert subjects == ["Upload failed: fail.mp4"]
