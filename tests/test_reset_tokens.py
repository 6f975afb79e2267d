import asyncio
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

from repositories import InMemoryUserRepository
from schemas.payment_models import User
from services.reset_tokens import ResetTokenService


class Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now


async def _service():
    users = InMemoryUserRepository()
    user = await users.save(User(email="a@b.com"))
    clock = Clock()
    service = ResetTokenService(users, secret="s3cret", frontend_url="https://learn.test/", clock=clock)
    return service, users, user, clock


async def test_issue_stores_only_the_hash():
    service, users, user, clock = await _service()

    token = await service.issue(user)

    stored = await users.get_by_email("a@b.com")
    assert len(token) == 64
    assert stored.reset_token_hash != token
    assert stored.reset_token_expires_at == clock.now + timedelta(minutes=15)
    assert await service.verify("a@b.com", token)


async def test_live_token_suppresses_reissue():
    service, _, user, _ = await _service()

    first, second = await asyncio.gather(service.issue(user), service.issue(user))

    assert [first is None, second is None].count(True) == 1


async def test_expired_token_fails_and_can_be_reissued():
    service, _, user, clock = await _service()
    token = await service.issue(user)

    clock.now += timedelta(minutes=16)

    assert not await service.verify("a@b.com", token)
    assert await service.issue(user) is not None


async def test_wrong_token_and_unknown_user_fail():
    service, _, user, _ = await _service()
    await service.issue(user)

    assert not await service.verify("a@b.com", "f" * 64)
    assert not await service.verify("nobody@b.com", "f" * 64)


async def test_consume_is_single_use():
    service, _, user, _ = await _service()
    token = await service.issue(user)

    assert await service.consume("a@b.com", token)
    assert not await service.consume("a@b.com", token)


def test_set_password_link():
    service = ResetTokenService(InMemoryUserRepository(), frontend_url="https://learn.test/")

    link = service.build_set_password_link("abc", "a+b@x.com")

    parsed = urlparse(link)
    assert parsed.path == "/set-password"
    assert parse_qs(parsed.query) == {"token": ["abc"], "email": ["a+b@x.com"]}


async def test_token_is_bound_to_its_own_email():
    service, users, user_a, _ = await _service()
    user_b = await users.save(User(email="c@d.com"))
    token_a = await service.issue(user_a)
    token_b = await service.issue(user_b)

    assert await service.verify("a@b.com", token_a)
    assert await service.verify("c@d.com", token_b)
    assert not await service.verify("c@d.com", token_a)
    assert not await service.verify("a@b.com", token_b)
