"""MicrosoftDriver against a mocked Graph API."""

import base64
import json
import logging
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import RecordingStore, batch_ok, make_connection
from mail_driver.errors import DriverError, ErrorKind
from mail_driver.providers.base import (
    DraftData,
    DriverConfig,
    EmailAddress,
    OutgoingAttachment,
    OutgoingMessage,
)
from mail_driver.providers.microsoft import GRAPH_BASE_URL, MicrosoftDriver


def graph_message(msg_id, subject="Status update", is_read=False, **extra):
    message = {
        "id": msg_id,
        "conversationId": f"conv-{msg_id}",
        "subject": subject,
        "bodyPreview": "Numbers &amp; charts",
        "from": {"emailAddress": {"name": "Bob", "address": "bob@example.com"}},
        "toRecipients": [{"emailAddress": {"name": "Alice", "address": "alice@example.com"}}],
        "receivedDateTime": "2024-03-01T09:30:00Z",
        "isRead": is_read,
        "internetMessageId": f"<{msg_id}@outlook.example.com>",
        "categories": ["Blue category"],
    }
    message.update(extra)
    return message


def graph_error(status, code, message="failed"):
    return httpx.Response(status, json={"error": {"code": code, "message": message}})


@pytest.fixture
def driver(microsoft_config, graph):
    return MicrosoftDriver(microsoft_config, transport=graph.transport)


# ==================== list ====================


@pytest.mark.asyncio
async def test_list_maps_folder_and_projects_threads(driver, graph):
    next_link = f"{GRAPH_BASE_URL}/me/mailFolders/sentitems/messages?$skip=5"
    graph.add("GET", "/me/mailFolders/sentitems/messages", json={
        "value": [graph_message("m1"), graph_message("m2", subject="", is_read=True)],
        "@odata.nextLink": next_link,
    })

    result = await driver.list("sent", max_results=5)

    (request,) = graph.requests
    assert request.url.params["$top"] == "5"
    assert request.url.params["$orderby"] == "receivedDateTime desc"
    assert "$search" not in request.url.params
    assert request.headers["Authorization"] == "Bearer access-123"

    first, second = result.threads
    assert first.id == "m1"
    assert first.unread is True
    assert first.title == "Numbers & charts"
    assert first.sender == EmailAddress("Bob", "bob@example.com")
    assert [(t.name, t.type) for t in first.tags] == [("Blue category", "category")]
    assert second.subject == "(no subject)"
    assert second.unread is False
    assert result.next_page_token == next_link


@pytest.mark.asyncio
async def test_list_search_and_category_filter(driver, graph):
    graph.add("GET", "/me/mailFolders/inbox/messages", json={"value": []})

    await driver.list("inbox", query='say "hi"', label_ids=["Blue"])
    await driver.list("inbox", label_ids=["Blue", "O'Brien"])

    searched, filtered = graph.requests
    assert searched.url.params["$search"] == '"say \\"hi\\""'
    assert "$orderby" not in searched.url.params
    assert "$filter" not in searched.url.params
    assert filtered.url.params["$filter"] == (
        "categories/any(c:c eq 'Blue') or categories/any(c:c eq 'O''Brien')"
    )


@pytest.mark.asyncio
async def test_unknown_folder_passes_through(driver, graph):
    graph.add("GET", "/me/mailFolders/AAMkFolder/messages", json={"value": [graph_message("m1")]})

    result = await driver.list("AAMkFolder")

    assert [t.id for t in result.threads] == ["m1"]


@pytest.mark.asyncio
async def test_pages_are_disjoint_and_bounded(driver, graph):
    all_ids = [f"m{i}" for i in range(5)]

    def page(request):
        skip = int(request.url.params.get("$skip", 0))
        top = int(request.url.params["$top"])
        body = {"value": [graph_message(i) for i in all_ids[skip:skip + top]]}
        if skip + top < len(all_ids):
            body["@odata.nextLink"] = f"{GRAPH_BASE_URL}/me/mailFolders/inbox/messages?$top={top}&$skip={skip + top}"
        return httpx.Response(200, json=body)

    graph.add("GET", "/me/mailFolders/inbox/messages", handler=page)

    seen, token = [], None
    while True:
        result = await driver.list("inbox", max_results=2, page_token=token)
        assert len(result.threads) <= 2
        seen.extend(t.id for t in result.threads)
        token = result.next_page_token
        if not token:
            break

    assert seen == all_ids
    assert len(graph.requests) == 3


@pytest.mark.asyncio
async def test_foreign_page_token_is_rejected(driver, graph, microsoft_store):
    with pytest.raises(DriverError) as excinfo:
        await driver.list("inbox", page_token="https://attacker.example.com/steal")

    assert excinfo.value.kind is ErrorKind.TRANSIENT
    assert graph.requests == []
    assert microsoft_store.deletes == []


# ==================== get ====================


@pytest.mark.asyncio
async def test_get_decodes_body_and_fetches_attachments(driver, graph):
    graph.add("GET", "/me/messages/m1", json=graph_message(
        "m1",
        body={"contentType": "text", "content": "Hi\nsee <attached>"},
        replyTo=[{"emailAddress": {"name": "", "address": "replies@example.com"}}],
        internetMessageHeaders=[
            {"name": "Received", "value": "from a.example.com by b.example.com (version=TLS1_2)"},
            {"name": "In-Reply-To", "value": "<parent@example.com>"},
            {"name": "List-Unsubscribe", "value": "<mailto:unsub@example.com>"},
        ],
        attachments=[
            {"id": "a1", "name": "report.pdf", "size": 3, "contentType": "application/pdf"},
            {"id": "a2", "name": "ghost.bin", "size": 0, "contentType": "application/octet-stream"},
        ],
    ))
    graph.add("GET", "/me/messages/m1/attachments/a1", json={"contentBytes": base64.b64encode(b"PDF").decode()})
    graph.add("GET", "/me/messages/m1/attachments/a2", json={"id": "a2"})

    detail = await driver.get("m1")

    message = detail.latest
    assert detail.messages == [message]
    assert detail.total_replies == 1
    assert detail.has_unread is True
    assert message.thread_id == "conv-m1"
    assert message.decoded_body == "Hi<br>see &lt;attached&gt;"
    assert message.tls is True
    assert message.in_reply_to == "<parent@example.com>"
    assert message.list_unsubscribe == "<mailto:unsub@example.com>"
    assert message.reply_to == "replies@example.com"
    assert message.cc is None
    assert [(a.filename, a.body) for a in message.attachments] == [("report.pdf", base64.b64encode(b"PDF").decode())]
    assert "attachments" in graph.requests[0].url.params["$expand"]


@pytest.mark.asyncio
async def test_get_keeps_html_body(driver, graph):
    graph.add("GET", "/me/messages/m1", json=graph_message(
        "m1", body={"contentType": "html", "content": "<p>5 &lt; 6</p>"},
    ))

    detail = await driver.get("m1")

    assert detail.latest.decoded_body == "<p>5 &lt; 6</p>"
    assert detail.latest.attachments == []


@pytest.mark.asyncio
async def test_provider_404_on_get_deletes_connection_once(driver, graph, microsoft_store, microsoft_connection):
    graph.add("GET", "/me/messages/gone", handler=lambda r: graph_error(404, "ErrorItemNotFound"))

    with pytest.raises(DriverError) as excinfo:
        await driver.get("gone")

    assert excinfo.value.kind is ErrorKind.FATAL
    assert excinfo.value.status_code == 404
    assert microsoft_store.deletes == [microsoft_connection.id]


@pytest.mark.asyncio
async def test_failed_attachment_fetch_waits_for_siblings(driver, graph, microsoft_store):
    graph.add("GET", "/me/messages/m1", json=graph_message(
        "m1",
        body={"contentType": "html", "content": "<p>hi</p>"},
        attachments=[
            {"id": "a1", "name": "one.pdf", "contentType": "application/pdf"},
            {"id": "a2", "name": "two.pdf", "contentType": "application/pdf"},
        ],
    ))
    graph.add("GET", "/me/messages/m1/attachments/a1", handler=lambda r: graph_error(503, "ServiceUnavailable"))
    graph.add("GET", "/me/messages/m1/attachments/a2", json={"contentBytes": base64.b64encode(b"2").decode()})

    with pytest.raises(DriverError) as excinfo:
        await driver.get("m1")

    assert excinfo.value.kind is ErrorKind.TRANSIENT
    assert sorted(graph.paths()[1:]) == [
        "GET /v1.0/me/messages/m1/attachments/a1",
        "GET /v1.0/me/messages/m1/attachments/a2",
    ]
    assert microsoft_store.deletes == []


@pytest.mark.asyncio
async def test_get_attachment(driver, graph):
    graph.add("GET", "/me/messages/m1/attachments/a1", json={"contentBytes": base64.b64encode(b"raw").decode()})
    graph.add("GET", "/me/messages/m1/attachments/a2", json={"id": "a2", "contentBytes": None})

    assert await driver.get_attachment("m1", "a1") == b"raw"
    with pytest.raises(DriverError) as excinfo:
        await driver.get_attachment("m1", "a2")
    assert excinfo.value.kind is ErrorKind.NOT_FOUND
    assert excinfo.value.message == "Attachment data not found"


# ==================== modifications ====================


@pytest.mark.asyncio
async def test_empty_id_lists_make_no_requests(driver, graph):
    await driver.mark_as_read([])
    await driver.mark_as_unread([])
    await driver.modify_labels([], ["trash"], [])

    assert graph.requests == []


@pytest.mark.asyncio
async def test_mark_as_read_is_one_batch(driver, graph):
    graph.add("POST", "/$batch", handler=batch_ok)

    await driver.mark_as_read(["m1", "m2", "m3"])

    (batch,) = graph.batch_bodies()
    assert [(r["method"], r["url"], r["body"]) for r in batch["requests"]] == [
        ("PATCH", "/me/messages/m1", {"isRead": True}),
        ("PATCH", "/me/messages/m2", {"isRead": True}),
        ("PATCH", "/me/messages/m3", {"isRead": True}),
    ]


@pytest.mark.asyncio
async def test_batches_are_chunked_by_twenty(driver, graph):
    graph.add("POST", "/$batch", handler=batch_ok)

    await driver.mark_as_unread([f"m{i}" for i in range(25)])

    first, second = graph.batch_bodies()
    assert len(first["requests"]) == 20
    assert len(second["requests"]) == 5
    ids = [r["id"] for r in first["requests"] + second["requests"]]
    assert len(set(ids)) == 25
    assert second["requests"][0]["body"] == {"isRead": False}


@pytest.mark.asyncio
async def test_failed_batch_item_is_fatal(driver, graph, microsoft_store, microsoft_connection):
    graph.add("POST", "/$batch", handler=lambda request: batch_ok(
        request, status=401, body={"error": {"code": "InvalidAuthenticationToken", "message": "expired"}},
    ))

    with pytest.raises(DriverError) as excinfo:
        await driver.mark_as_read(["m1", "m2"])

    assert excinfo.value.kind is ErrorKind.FATAL
    assert excinfo.value.code == "InvalidAuthenticationToken"
    assert excinfo.value.operation == "mark_as_read"
    assert microsoft_store.deletes == [microsoft_connection.id]


@pytest.mark.asyncio
async def test_modify_labels_moves_to_first_folder(driver, graph, caplog):
    graph.add("POST", "/$batch", handler=batch_ok)

    with caplog.at_level(logging.WARNING):
        await driver.modify_labels(["m1", "m2"], ["Important", "Trash"], ["Inbox"])

    (batch,) = graph.batch_bodies()
    assert [(r["method"], r["url"], r["body"]) for r in batch["requests"]] == [
        ("POST", "/me/messages/m1/move", {"destinationId": "deleteditems"}),
        ("POST", "/me/messages/m2/move", {"destinationId": "deleteditems"}),
    ]
    assert "Important" in caplog.text
    assert "Inbox" in caplog.text


@pytest.mark.asyncio
async def test_modify_labels_without_folder_is_a_logged_no_op(driver, graph, caplog):
    with caplog.at_level(logging.WARNING):
        await driver.modify_labels(["m1"], ["Important"], ["Later"])

    assert graph.requests == []
    assert "cannot apply label changes" in caplog.text


@pytest.mark.asyncio
async def test_modify_labels_logs_unmapped_adds(driver, graph, caplog):
    with caplog.at_level(logging.WARNING):
        await driver.modify_labels(["m1"], ["Important"], [])

    assert graph.requests == []
    assert "Important" in caplog.text


@pytest.mark.asyncio
async def test_count_omits_absent_folders(driver, graph):
    unread = {"inbox": 3, "sentitems": 0, "drafts": 1, "deleteditems": 7, "junkemail": 2}

    def respond(request):
        responses = []
        for item in json.loads(request.content)["requests"]:
            folder = item["url"].split("/")[-1].split("?")[0]
            if folder in unread:
                responses.append({"id": item["id"], "status": 200, "body": {"unreadItemCount": unread[folder]}})
            else:
                responses.append({"id": item["id"], "status": 404, "body": {"error": {"code": "ErrorItemNotFound"}}})
        return httpx.Response(200, json={"responses": responses})

    graph.add("POST", "/$batch", handler=respond)

    counts = await driver.count()

    assert [(c.label, c.count) for c in counts] == [
        ("inbox", 3), ("sent", 0), ("drafts", 1), ("trash", 7), ("junk", 2),
    ]
    assert len(graph.requests) == 1


@pytest.mark.asyncio
async def test_create_sends_sanitized_message(driver, graph, caplog):
    captured = []

    def send(request):
        captured.append(json.loads(request.content))
        return httpx.Response(202)

    graph.add("POST", "/me/sendMail", handler=send)

    with caplog.at_level(logging.WARNING):
        result = await driver.create(OutgoingMessage(
            to=[EmailAddress("Bob", "bob@example.com")],
            bcc=[EmailAddress("", "audit@example.com")],
            subject="Plan",
            message='  <p>Go</p><img src="x" onerror="steal()"><script>bad()</script>  ',
            attachments=[OutgoingAttachment("plan.txt", b"step 1", "text/plain")],
            headers={"X-Priority-Tag": "gold", "Reply-To": "other@example.com"},
            from_email="alice@example.com",
        ))

    assert result == {}
    (payload,) = captured
    assert payload["saveToSentItems"] is True
    message = payload["message"]
    assert message["body"] == {"contentType": "html", "content": '<p>Go</p><img src="x"/>'}
    assert message["toRecipients"] == [{"emailAddress": {"name": "Bob", "address": "bob@example.com"}}]
    assert message["bccRecipients"] == [{"emailAddress": {"name": "", "address": "audit@example.com"}}]
    assert "ccRecipients" not in message
    assert message["from"] == {"emailAddress": {"name": "Alice", "address": "alice@example.com"}}
    assert message["internetMessageHeaders"] == [{"name": "X-Priority-Tag", "value": "gold"}]
    assert message["attachments"][0]["contentBytes"] == base64.b64encode(b"step 1").decode()
    assert "Reply-To" in caplog.text


@pytest.mark.asyncio
async def test_delete_already_deleted_succeeds(driver, graph, microsoft_store):
    graph.add("DELETE", "/me/messages/m1", handler=lambda r: graph_error(404, "ErrorItemNotFound"))

    await driver.delete("m1")

    assert microsoft_store.deletes == []


# ==================== error handling ====================


@pytest.mark.asyncio
async def test_fatal_error_deletes_connection_once(driver, graph, microsoft_store, microsoft_connection):
    graph.add("GET", "/me/mailFolders/inbox/messages",
              handler=lambda r: graph_error(401, "InvalidAuthenticationToken", "Access token has expired"))

    with pytest.raises(DriverError) as excinfo:
        await driver.list("inbox")

    error = excinfo.value
    assert error.is_fatal
    assert error.operation == "list"
    assert error.provider == "microsoft"
    assert error.message == "Access token has expired"
    assert microsoft_store.deletes == [microsoft_connection.id]
    assert "access-123" not in json.dumps(error.to_dict())


@pytest.mark.asyncio
@pytest.mark.parametrize("status, code", [(429, "TooManyRequests"), (503, "ServiceUnavailable"), (500, "generalException")])
async def test_transient_errors_keep_connection(driver, graph, microsoft_store, status, code):
    graph.add("GET", "/me/mailFolders/inbox/messages", handler=lambda r: graph_error(status, code))

    with pytest.raises(DriverError) as excinfo:
        await driver.list("inbox")

    assert excinfo.value.kind is ErrorKind.TRANSIENT
    assert excinfo.value.status_code == status
    assert microsoft_store.deletes == []


@pytest.mark.asyncio
async def test_network_failure_is_transient(microsoft_config, microsoft_store):
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    driver = MicrosoftDriver(microsoft_config, transport=httpx.MockTransport(unreachable))

    with pytest.raises(DriverError) as excinfo:
        await driver.get_user_labels()

    assert excinfo.value.kind is ErrorKind.TRANSIENT
    assert microsoft_store.deletes == []


class FakeMsalApp:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def acquire_token_by_refresh_token(self, refresh_token, scopes):
        self.calls.append(refresh_token)
        return self.result

    def acquire_token_by_authorization_code(self, code, scopes, redirect_uri=None):
        self.calls.append(code)
        return self.result


def _expired_config(settings):
    connection = make_connection("microsoft", expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
    store = RecordingStore(connection)
    return DriverConfig(connection, settings, store), store


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_before_request(settings, graph):
    config, store = _expired_config(settings)
    app = FakeMsalApp({"access_token": "fresh", "expires_in": 3600})
    graph.add("GET", "/me/mailFolders/inbox/messages", json={"value": []})
    driver = MicrosoftDriver(config, transport=graph.transport, msal_app=app)

    await driver.list("inbox")

    assert graph.requests[0].headers["Authorization"] == "Bearer fresh"
    assert store.updates[0][1]["access_token"] == "fresh"
    assert store.deletes == []


@pytest.mark.asyncio
async def test_refused_refresh_deletes_connection(settings, graph):
    config, store = _expired_config(settings)
    app = FakeMsalApp({"error": "invalid_grant", "error_description": "AADSTS50173"})
    driver = MicrosoftDriver(config, transport=graph.transport, msal_app=app)

    with pytest.raises(DriverError) as excinfo:
        await driver.list("inbox")

    assert excinfo.value.is_fatal
    assert graph.requests == []
    assert store.deletes == [config.connection.id]


# ==================== labels ====================


@pytest.mark.asyncio
async def test_label_create_then_get_round_trip(driver, graph):
    folder = {"id": "AAMkF1", "displayName": "Projects"}
    graph.add("POST", "/me/mailFolders", status=201, json=folder)
    graph.add("GET", "/me/mailFolders/AAMkF1", json=folder)

    created = await driver.create_label("Projects")
    fetched = await driver.get_label(created.id)

    assert created == fetched
    assert (fetched.id, fetched.name, fetched.type) == ("AAMkF1", "Projects", "folder")
    assert json.loads(graph.requests[0].content) == {"displayName": "Projects"}


@pytest.mark.asyncio
async def test_get_label_falls_back_to_category(driver, graph, microsoft_store):
    graph.add("GET", "/me/mailFolders/cat-1", handler=lambda r: graph_error(400, "ErrorInvalidIdMalformed"))
    graph.add("GET", "/me/outlook/masterCategories/cat-1",
              json={"id": "cat-1", "displayName": "Red category", "color": "preset0"})

    label = await driver.get_label("cat-1")

    assert (label.id, label.name, label.type) == ("cat-1", "Red category", "category")
    assert label.color.background_color == "preset0"
    assert microsoft_store.deletes == []


@pytest.mark.asyncio
async def test_get_missing_label_is_not_found(driver, graph, microsoft_store):
    with pytest.raises(DriverError) as excinfo:
        await driver.get_label("nope")

    assert excinfo.value.kind is ErrorKind.NOT_FOUND
    assert microsoft_store.deletes == []


@pytest.mark.asyncio
async def test_user_labels_lists_categories_then_folders(driver, graph):
    graph.add("GET", "/me/outlook/masterCategories", json={"value": [{"id": "c1", "displayName": "Blue"}]})
    graph.add("GET", "/me/mailFolders", json={"value": [{"id": "f1", "displayName": "Inbox"}]})

    labels = await driver.get_user_labels()

    assert [(l.id, l.type) for l in labels] == [("c1", "category"), ("f1", "folder")]


@pytest.mark.asyncio
async def test_user_labels_follow_folder_pages(driver, graph):
    def folders(request):
        if request.url.params.get("$skip") == "100":
            return httpx.Response(200, json={"value": [{"id": "f101", "displayName": "Overflow"}]})
        return httpx.Response(200, json={
            "value": [{"id": f"f{i}", "displayName": f"Folder {i}"} for i in range(1, 101)],
            "@odata.nextLink": f"{GRAPH_BASE_URL}/me/mailFolders?$top=100&$skip=100",
        })

    graph.add("GET", "/me/outlook/masterCategories", json={"value": []})
    graph.add("GET", "/me/mailFolders", handler=folders)

    labels = await driver.get_user_labels()

    assert len(labels) == 101
    assert labels[-1].name == "Overflow"
    assert len(graph.requests) == 3


@pytest.mark.asyncio
async def test_update_and_delete_label(driver, graph):
    graph.add("PATCH", "/me/mailFolders/f1", handler=lambda r: graph_error(404, "ErrorItemNotFound"))
    graph.add("PATCH", "/me/outlook/masterCategories/f1", json={"id": "f1", "displayName": "Renamed"})
    graph.add("DELETE", "/me/mailFolders/f2", status=204)

    updated = await driver.update_label("f1", "Renamed")
    await driver.delete_label("f2")

    assert (updated.name, updated.type) == ("Renamed", "category")
    assert graph.paths()[-1] == "DELETE /v1.0/me/mailFolders/f2"


# ==================== drafts ====================


@pytest.mark.asyncio
async def test_draft_lifecycle(driver, graph):
    graph.add("POST", "/me/messages", status=201, json={"id": "d1"})
    graph.add("PATCH", "/me/messages/d1", json={"id": "d1"})
    graph.add("POST", "/me/messages/d1/attachments", status=201, json={"id": "att"})
    graph.add("POST", "/me/messages/d1/send", status=202)

    data = DraftData(to=[EmailAddress("", "bob@example.com")], subject="WIP", message="<p>draft</p>")
    created = await driver.create_draft(data)
    data.id = created["id"]
    data.attachments = [OutgoingAttachment("a.txt", b"a")]
    await driver.create_draft(data)
    sent = await driver.send_draft("d1")

    assert sent == {"id": "d1"}
    methods = graph.paths()
    assert methods == [
        "POST /v1.0/me/messages",
        "PATCH /v1.0/me/messages/d1",
        "POST /v1.0/me/messages/d1/attachments",
        "POST /v1.0/me/messages/d1/send",
    ]
    patch_body = json.loads(graph.requests[1].content)
    assert "attachments" not in patch_body
    assert patch_body["subject"] == "WIP"


@pytest.mark.asyncio
async def test_list_and_get_drafts(driver, graph):
    graph.add("GET", "/me/mailFolders/drafts/messages", json={"value": [graph_message("d1", subject="Idea")]})
    graph.add("GET", "/me/messages/d1", json={
        "id": "d1",
        "subject": "Idea",
        "body": {"contentType": "html", "content": "<p>draft</p>"},
        "toRecipients": [{"emailAddress": {"address": "bob@example.com"}}],
        "ccRecipients": [],
    })

    listing = await driver.list_drafts()
    draft = await driver.get_draft("d1")

    assert graph.requests[0].url.params["$top"] == "20"
    assert [(t.id, t.unread) for t in listing.threads] == [("d1", False)]
    assert (draft.id, draft.to, draft.cc, draft.subject, draft.content) == (
        "d1", ["bob@example.com"], [], "Idea", "<p>draft</p>",
    )


# ==================== account ====================


@pytest.mark.asyncio
async def test_user_info_with_photo(driver, graph):
    graph.add("GET", "/me", json={"displayName": "Alice", "mail": "alice@example.com"})
    graph.add("GET", "/me/photo/$value",
              handler=lambda r: httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"}))

    info = await driver.get_user_info()

    assert info.address == "alice@example.com"
    assert info.name == "Alice"
    assert info.photo == "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()


@pytest.mark.asyncio
async def test_user_info_without_photo(driver, graph, microsoft_store):
    graph.add("GET", "/me", json={"displayName": "Alice", "userPrincipalName": "alice@contoso.com"})

    info = await driver.get_user_info()

    assert info.address == "alice@contoso.com"
    assert info.photo == ""
    assert microsoft_store.deletes == []


@pytest.mark.asyncio
async def test_email_aliases(driver, graph):
    graph.add("GET", "/me", json={
        "displayName": "Alice",
        "mail": "alice@example.com",
        "proxyAddresses": ["SMTP:alice@example.com", "smtp:a.smith@example.com", "X500:/o=Org/cn=alice"],
    })

    aliases = await driver.get_email_aliases()

    assert [(a.email, a.primary) for a in aliases] == [
        ("alice@example.com", True),
        ("a.smith@example.com", False),
    ]


@pytest.mark.asyncio
async def test_tokens_scope_and_revocation(microsoft_config, graph):
    app = FakeMsalApp({"access_token": "a", "refresh_token": "r", "expires_in": 3600})
    driver = MicrosoftDriver(microsoft_config, transport=graph.transport, msal_app=app)

    tokens = await driver.get_tokens("auth-code")

    assert (tokens.access_token, tokens.refresh_token) == ("a", "r")
    assert app.calls == ["auth-code"]
    assert "https://graph.microsoft.com/Mail.ReadWrite" in driver.get_scope().split()
    assert "offline_access" in driver.get_scope().split()
    assert await driver.revoke_refresh_token("r") is False
    assert graph.requests == []
