"""Facade tests — the inbound pipeline, fetching by GUID and the sync wrapper."""

import httpx
import pytest

from diaspora_fed import AsyncFederation, Federation, FederationConfig, ImporterContext, MessageType
from diaspora_fed.envelope import build_magic_envelope, build_message
from diaspora_fed.fetch import server_root
from diaspora_fed.models.contact import Contact
from diaspora_fed.models.delivery import DeliveryOutcome

from conftest import ALICE, BOB, build_legacy_private, build_legacy_public, status_message_xml


class Inbox:
    def __init__(self):
        self.messages = []

    async def __call__(self, context, message):
        self.messages.append((context, message))
        return message.guid


def _routes(table: dict):
    """MockTransport handler serving fixed bodies by path; anything else is a 404."""
    def handler(request: httpx.Request) -> httpx.Response:
        body = table.get(request.url.path)
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, text=body)
    return handler


@pytest.fixture
def bob(bob_keys) -> ImporterContext:
    return ImporterContext(uid=2, handle=BOB, private_key=bob_keys.private_pem, base_url="https://example.net")


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_alice_sends_bob_a_private_status(self, alice_keys, bob_keys, bob, resolver):
        inbox = Inbox()
        bob_pod = AsyncFederation(key_resolver=resolver, base_url="https://example.net",
                                  handlers={MessageType.STATUS_MESSAGE: inbox})

        async def bobs_server(request: httpx.Request) -> httpx.Response:
            if request.method != "POST":
                return httpx.Response(404)
            result = await bob_pod.receive_private(bob, request.content)
            return httpx.Response(202 if result.ok else 422)

        alice_pod = AsyncFederation(key_resolver=resolver, base_url="https://example.com",
                                    transport=httpx.MockTransport(bobs_server))
        contact = alice_pod.store.add_contact(Contact(
            uid=1, addr=BOB, notify="https://example.net/receive/users/b0b", public_key=bob_keys.public_pem,
        ))
        alice = ImporterContext(uid=1, handle=ALICE, private_key=alice_keys.private_pem, base_url="https://example.com")

        result = await alice_pod.build_and_transmit(
            alice, contact, "status_message", {"author": ALICE, "guid": "g1", "public": "false", "text": "hello"},
            guid="g1",
        )
        await alice_pod.close()
        await bob_pod.close()

        assert result.status_code == 202
        assert result.outcome == DeliveryOutcome.DELIVERED
        [(context, message)] = inbox.messages
        assert context is bob
        assert message.get("text") == "hello"
        assert message.author == ALICE


class TestInbound:
    @pytest.mark.asyncio
    async def test_public_status_message(self, alice_keys, resolver):
        inbox = Inbox()
        fed = AsyncFederation(key_resolver=resolver)
        fed.register(MessageType.STATUS_MESSAGE, inbox)

        result = await fed.receive_public(build_magic_envelope(status_message_xml(public=True), ALICE, alice_keys.private_pem))
        assert result.ok
        assert result.type == MessageType.STATUS_MESSAGE
        assert result.result == "g1"
        assert inbox.messages[0][0].uid == 0
        await fed.close()

    @pytest.mark.asyncio
    async def test_public_profile_is_rejected(self, alice_keys, resolver):
        inbox = Inbox()
        fed = AsyncFederation(key_resolver=resolver, handlers={MessageType.PROFILE: inbox})
        profile = f"<profile><author>{ALICE}</author><first_name>Alice</first_name></profile>"

        result = await fed.receive_public(build_magic_envelope(profile, ALICE, alice_keys.private_pem))
        assert not result.ok
        assert result.type == MessageType.PROFILE
        assert result.error_code == "privacy_violation"
        assert inbox.messages == []
        await fed.close()

    @pytest.mark.asyncio
    async def test_failures_become_results(self, bob_keys, resolver):
        fed = AsyncFederation(key_resolver=resolver)
        garbage = await fed.receive_public("<not-an-envelope/>")
        assert (garbage.ok, garbage.error_code) == (False, "malformed_envelope")

        forged = build_magic_envelope(status_message_xml(), ALICE, bob_keys.private_pem)
        result = await fed.receive_public(forged)
        assert result.error_code == "signature_verification_failed"
        assert result.type is None
        await fed.close()

    @pytest.mark.asyncio
    async def test_private_envelope_with_non_string_fields(self, bob, resolver):
        fed = AsyncFederation(key_resolver=resolver)
        result = await fed.receive_private(bob, '{"aes_key": 123, "encrypted_magic_envelope": 456}')
        assert (result.ok, result.error_code) == (False, "malformed_envelope")
        await fed.close()

    @pytest.mark.asyncio
    async def test_disabled(self, alice_keys, bob, resolver):
        fed = AsyncFederation(config=FederationConfig(enabled=False), key_resolver=resolver)
        envelope = build_magic_envelope(status_message_xml(), ALICE, alice_keys.private_pem)
        assert (await fed.receive_public(envelope)).error_code == "disabled"
        assert (await fed.receive_private(bob, envelope)).error_code == "disabled"
        await fed.close()

    @pytest.mark.asyncio
    async def test_legacy_channels(self, alice_keys, bob_keys, bob, resolver):
        inbox = Inbox()
        fed = AsyncFederation(key_resolver=resolver, handlers={MessageType.MESSAGE: inbox})
        payload = (
            "<XML><post><message>"
            "<guid>m1</guid><parent_guid>conv1</parent_guid><text>psst</text>"
            f"<diaspora_handle>{ALICE}</diaspora_handle><conversation_guid>conv1</conversation_guid>"
            "</message></post></XML>"
        )

        private = await fed.receive_legacy(
            bob, build_legacy_private(payload, ALICE, alice_keys.private_pem, bob_keys.public_pem),
        )
        assert private.ok
        assert inbox.messages[0][1].author == ALICE

        public = await fed.receive_legacy(ImporterContext(), build_legacy_public(payload, ALICE, alice_keys.private_pem))
        assert public.error_code == "privacy_violation"
        assert len(inbox.messages) == 1
        await fed.close()

    @pytest.mark.asyncio
    async def test_duplicate_mail_is_stored_once(self, alice_keys, bob_keys, bob, resolver):
        fed = AsyncFederation(key_resolver=resolver)

        async def on_message(context, message):
            return fed.guard.insert_once(context.uid, message.guid, {"text": message.get("text")})

        fed.register(MessageType.MESSAGE, on_message)
        body = f"<message><author>{ALICE}</author><guid>m1</guid><text>hi</text></message>"
        envelope = build_message(body, ALICE, alice_keys.private_pem, bob_keys.public_pem)

        first = await fed.receive_private(bob, envelope)
        second = await fed.receive_private(bob, envelope)
        assert first.ok and second.ok
        assert first.result is not None
        assert second.result is None
        assert len(fed.store.mail) == 1
        await fed.close()


class TestFetch:
    def test_server_root(self):
        assert server_root("https://example.com/u/alice") == "https://example.com"
        assert server_root("example.com") is None

    @pytest.mark.asyncio
    async def test_store_by_guid(self, alice_keys, resolver):
        inbox = Inbox()
        reshare = f"<reshare><author>{ALICE}</author><guid>r1</guid><root_author>{ALICE}</root_author><root_guid>g1</root_guid></reshare>"
        transport = httpx.MockTransport(_routes({
            "/fetch/post/r1": build_magic_envelope(reshare, ALICE, alice_keys.private_pem),
            "/fetch/post/g1": build_magic_envelope(status_message_xml(public=True), ALICE, alice_keys.private_pem),
        }))
        fed = AsyncFederation(key_resolver=resolver, transport=transport, handlers={MessageType.STATUS_MESSAGE: inbox})

        result = await fed.store_by_guid("r1", "https://example.com/u/alice")
        assert result.ok
        assert inbox.messages[0][1].guid == "g1"
        assert await fed.store_by_guid("missing", "https://example.com") is None
        assert await fed.store_by_guid("g1", "not a url") is None
        await fed.close()

    @pytest.mark.asyncio
    async def test_signed_post_must_name_its_signer(self, bob_keys, resolver):
        inbox = Inbox()
        # Bob signs a post that claims to be alice's
        forged = build_magic_envelope(status_message_xml(author=ALICE, public=True), BOB, bob_keys.private_pem)
        fed = AsyncFederation(key_resolver=resolver, handlers={MessageType.STATUS_MESSAGE: inbox},
                              transport=httpx.MockTransport(_routes({"/fetch/post/g1": forged})))

        assert await fed.store_by_guid("g1", "https://example.net") is None
        assert inbox.messages == []
        await fed.close()

    @pytest.mark.asyncio
    async def test_fetched_author_is_the_signer(self, bob_keys, resolver):
        inbox = Inbox()
        own = build_magic_envelope(status_message_xml(author=BOB, public=True), BOB, bob_keys.private_pem)
        fed = AsyncFederation(key_resolver=resolver, handlers={MessageType.STATUS_MESSAGE: inbox},
                              transport=httpx.MockTransport(_routes({"/fetch/post/g1": own})))

        result = await fed.store_by_guid("g1", "https://example.net")
        assert result.ok
        assert inbox.messages[0][1].author == BOB
        await fed.close()

    @pytest.mark.asyncio
    async def test_reshare_loop_stops(self, alice_keys, resolver):
        loop = f"<reshare><author>{ALICE}</author><guid>loop</guid><root_guid>loop</root_guid></reshare>"
        fed = AsyncFederation(key_resolver=resolver, transport=httpx.MockTransport(_routes({
            "/fetch/post/loop": build_magic_envelope(loop, ALICE, alice_keys.private_pem),
        })))
        assert await fed.store_by_guid("loop", "https://example.com") is None
        await fed.close()

    @pytest.mark.asyncio
    async def test_unsigned_fallback_is_opt_in(self, resolver):
        legacy = (
            "<XML><post><status_message>"
            f"<raw_message>old</raw_message><guid>g1</guid><diaspora_handle>{ALICE}</diaspora_handle>"
            "</status_message></post></XML>"
        )
        transport = httpx.MockTransport(_routes({"/p/g1.xml": legacy}))

        strict = AsyncFederation(key_resolver=resolver, transport=transport, handlers={MessageType.STATUS_MESSAGE: Inbox()})
        assert await strict.store_by_guid("g1", "https://example.com") is None
        await strict.close()

        inbox = Inbox()
        lenient = AsyncFederation(config=FederationConfig(allow_unsigned_fetch=True), key_resolver=resolver,
                                  transport=transport, handlers={MessageType.STATUS_MESSAGE: inbox})
        result = await lenient.store_by_guid("g1", "https://example.com")
        assert result.ok
        assert inbox.messages[0][1].get("text") == "old"
        await lenient.close()

    @pytest.mark.asyncio
    async def test_only_status_messages_are_fetched(self, alice_keys, resolver):
        like = f"<like><author>{ALICE}</author><guid>l1</guid></like>"
        fed = AsyncFederation(key_resolver=resolver, transport=httpx.MockTransport(_routes({
            "/fetch/post/l1": build_magic_envelope(like, ALICE, alice_keys.private_pem),
        })))
        assert await fed.store_by_guid("l1", "https://example.com") is None
        await fed.close()


def test_sync_wrapper(alice_keys, resolver):
    inbox = Inbox()
    fed = Federation(key_resolver=resolver, handlers={MessageType.STATUS_MESSAGE: inbox})
    result = fed.receive_public(build_magic_envelope(status_message_xml(public=True), ALICE, alice_keys.private_pem))
    assert result.ok
    assert len(inbox.messages) == 1

    fed.config.relay_servers = ["https://relay.example"]
    assert [c.batch for c in fed.relay_list(1)] == ["https://relay.example/receive/public"]
    fed.close()
