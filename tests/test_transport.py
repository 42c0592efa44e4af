import asyncio

import pytest

from mail_scheduler.transport import LogTransport, SMTPPool, SmtpTransport, TransportNotConfigured


class DummySMTP:
    def __init__(self, hostname, port, use_tls=False, timeout=None):
        self.hostname = hostname
        self.port = port
        self.use_tls = use_tls
        self.timeout = timeout
        self.login_credentials = None
        self.connected = False
        self.closed = False
        self.alive = True
        self.fail_send = False
        self.messages = []

    async def connect(self):
        self.connected = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def noop(self):
        if not self.alive:
            raise RuntimeError("Connection dead")
        return 250, b"OK"

    async def send_message(self, msg):
        if self.fail_send:
            raise ConnectionResetError("connection lost")
        self.messages.append(msg)
        return {}, "250 queued"

    async def quit(self):
        self.closed = True


@pytest.fixture(autouse=True)
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("mail_scheduler.transport.aiosmtplib.SMTP", factory)
    return created


@pytest.mark.asyncio
async def test_get_connection_reuses_active_instance(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp1 = await pool.get_connection("smtp.local", 25, "user", "pass", use_tls=False)
    smtp2 = await pool.get_connection("smtp.local", 25, "user", "pass", use_tls=False)

    assert smtp1 is smtp2
    assert smtp1.login_credentials == ("user", "pass")
    assert len(patch_aiosmtplib) == 1


@pytest.mark.asyncio
async def test_get_connection_discards_expired_instance(patch_aiosmtplib):
    pool = SMTPPool(ttl=-1)
    smtp1 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)

    smtp2 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)
    assert smtp1.closed is True
    assert smtp2 is not smtp1
    assert smtp1.login_credentials is None


@pytest.mark.asyncio
async def test_get_connection_replaces_dead_instance(patch_aiosmtplib):
    pool = SMTPPool(ttl=300)
    smtp1 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)
    smtp1.alive = False

    smtp2 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)
    assert smtp2 is not smtp1
    assert smtp1.closed is True


@pytest.mark.asyncio
async def test_each_task_gets_its_own_connection(patch_aiosmtplib):
    pool = SMTPPool(ttl=300)

    async def grab():
        return await pool.get_connection("smtp.local", 25, None, None, use_tls=False)

    first, second = await asyncio.gather(asyncio.create_task(grab()), asyncio.create_task(grab()))
    assert first is not second


@pytest.mark.asyncio
async def test_cleanup_removes_dead_connections(monkeypatch, patch_aiosmtplib):
    pool = SMTPPool(ttl=1)
    smtp = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)

    async def fake_is_alive(_smtp):
        return False

    monkeypatch.setattr(pool, "_is_alive", fake_is_alive)

    await pool.cleanup()
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_smtp_transport_sends_html(patch_aiosmtplib):
    transport = SmtpTransport("smtp.local", 587, "user", "pass", from_address="noreply@example.com")
    info = await transport.send("bob@example.com", "Hello", "<p>Hi</p>")

    [smtp] = patch_aiosmtplib
    [msg] = smtp.messages
    assert msg["To"] == "bob@example.com"
    assert msg["From"] == "noreply@example.com"
    assert msg["Subject"] == "Hello"
    assert msg.get_content_type() == "text/html"
    assert info.message_id == msg["Message-ID"]
    assert info.response == "250 queued"
    assert smtp.use_tls is False

    await transport.close()
    assert smtp.closed is True


@pytest.mark.asyncio
async def test_smtp_transport_drops_connection_after_error(patch_aiosmtplib):
    transport = SmtpTransport("smtp.local", 465)
    assert transport.use_tls is True
    await transport.send("bob@example.com", "First", "<p>1</p>")
    [smtp] = patch_aiosmtplib
    smtp.fail_send = True

    with pytest.raises(ConnectionResetError):
        await transport.send("bob@example.com", "Second", "<p>2</p>")
    assert smtp.closed is True

    await transport.send("bob@example.com", "Third", "<p>3</p>")
    assert len(patch_aiosmtplib) == 2


def test_smtp_transport_requires_host():
    with pytest.raises(TransportNotConfigured):
        SmtpTransport("")


@pytest.mark.asyncio
async def test_log_transport_keeps_bounded_history():
    transport = LogTransport(max_history=2)
    for idx in range(3):
        info = await transport.send("bob@example.com", f"S{idx}", "<p>x</p>")
    assert [entry["subject"] for entry in transport.history] == ["S1", "S2"]
    assert info.response == "logged"
