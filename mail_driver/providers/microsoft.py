"""
Microsoft 365 / Outlook driver implementation.
Uses Microsoft Graph API for mail access.
"""

import asyncio
import base64
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from ..errors import NotFoundError, ProviderHTTPError
from ..sanitize import decode_entities, sanitize_html, text_to_html
from ..tokens import MicrosoftTokenSupplier, OAuthTokens
from .base import (
    DEFAULT_DRAFT_MAX_RESULTS,
    DEFAULT_MAX_RESULTS,
    Attachment,
    Draft,
    DraftData,
    EmailAddress,
    EmailAlias,
    Label,
    LabelColor,
    MailDriver,
    OutgoingMessage,
    ParsedMessage,
    ProviderType,
    Thread,
    ThreadDetail,
    ThreadList,
    UnreadCount,
    UserInfo,
    operation,
    unknown_sender,
    was_sent_with_tls,
)

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

MICROSOFT_SCOPES = [
    'https://graph.microsoft.com/User.Read',
    'https://graph.microsoft.com/Mail.ReadWrite',
    'https://graph.microsoft.com/Mail.Send',
    'offline_access',
]

# Canonical folder token -> well-known folder name
FOLDER_IDS = {
    'inbox': 'inbox',
    'sent': 'sentitems',
    'drafts': 'drafts',
    'trash': 'deleteditems',
    'bin': 'deleteditems',
    'archive': 'archive',
    'junk': 'junkemail',
    'spam': 'junkemail',
}

# Well-known folder name -> canonical folder token reported by count()
COUNT_FOLDERS = {
    'inbox': 'inbox',
    'sentitems': 'sent',
    'drafts': 'drafts',
    'deleteditems': 'trash',
    'archive': 'archive',
    'junkemail': 'junk',
}

LIST_SELECT = (
    'id,subject,bodyPreview,from,toRecipients,ccRecipients,bccRecipients,'
    'receivedDateTime,isRead,conversationId,internetMessageId,categories,parentFolderId'
)
GET_SELECT = LIST_SELECT + ',body,replyTo,internetMessageHeaders,hasAttachments'

# Graph accepts at most 20 requests per $batch call
BATCH_LIMIT = 20


def _recipients(items: Optional[List[Dict[str, Any]]]) -> List[EmailAddress]:
    return [
        EmailAddress(
            name=(item.get('emailAddress') or {}).get('name') or '',
            email=(item.get('emailAddress') or {}).get('address') or '',
        )
        for item in items or []
    ]


def _to_recipients(addresses: List[EmailAddress]) -> List[Dict[str, Any]]:
    return [{'emailAddress': {'name': a.name or '', 'address': a.email}} for a in addresses]


def _category_filter(label_ids: List[str]) -> str:
    """OData filter matching messages carrying any of the categories."""
    quoted = ["'" + label.replace("'", "''") + "'" for label in label_ids]
    return ' or '.join(f"categories/any(c:c eq {q})" for q in quoted)


async def _gather(coros: List[Any]) -> List[Any]:
    """Run requests concurrently, waiting for all before raising the first failure."""
    results = await asyncio.gather(*coros, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


def _error_from_body(status_code: int, body: Any, fallback: str = "") -> ProviderHTTPError:
    """Build a ProviderHTTPError from a Graph error payload."""
    code = None
    message = fallback or f"HTTP {status_code}"
    if isinstance(body, dict):
        error = body.get('error')
        if isinstance(error, dict):
            code = error.get('code')
            message = error.get('message') or message
        elif isinstance(error, str):
            code = error
            message = body.get('error_description') or error
    return ProviderHTTPError(message, status_code=status_code, code=code)


class MicrosoftDriver(MailDriver):
    """
    Microsoft 365 / Outlook driver using Graph API.

    Outlook has folders and categories where Gmail has labels. Folders are
    exposed as labels of type "folder", categories as type "category".
    """

    display_name = "Outlook"

    def __init__(
        self,
        config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        msal_app: Optional[Any] = None,
    ):
        """
        Initialize Microsoft driver.

        Args:
            config: DriverConfig bound to a Microsoft connection
            transport: httpx transport used for Graph requests
            msal_app: Prebuilt MSAL application for token calls
        """
        self._transport = transport
        self._msal_app = msal_app
        super().__init__(config)

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.MICROSOFT

    def _create_token_supplier(self) -> MicrosoftTokenSupplier:
        return MicrosoftTokenSupplier(
            self.config.connection,
            self.config.settings,
            self.config.store,
            scopes=MICROSOFT_SCOPES,
            msal_app=self._msal_app,
        )

    async def _request(
        self,
        method: str,
        endpoint: str = "",
        params: Optional[Dict] = None,
        json_data: Optional[Dict] = None,
        url: Optional[str] = None,
    ) -> httpx.Response:
        """Make authenticated request to Graph API, raising on error responses."""
        token = await self.tokens.get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(transport=self._transport, timeout=self.config.settings.request_timeout) as client:
            response = await client.request(
                method=method,
                url=url or f"{GRAPH_BASE_URL}{endpoint}",
                headers=headers,
                params=params,
                json=json_data,
            )

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            raise _error_from_body(response.status_code, body, response.text[:200])
        return response

    async def _make_request(
        self,
        method: str,
        endpoint: str = "",
        params: Optional[Dict] = None,
        json_data: Optional[Dict] = None,
        url: Optional[str] = None,
    ) -> Dict[str, Any]:
        response = await self._request(method, endpoint, params=params, json_data=json_data, url=url)
        return response.json() if response.content else {}

    async def _batch(self, requests: List[Dict[str, Any]], allow_missing: bool = False) -> List[Dict[str, Any]]:
        """
        Send sub-requests through Graph's $batch endpoint.

        Args:
            requests: Dicts with method, url and optional body
            allow_missing: Leave 404 sub-responses out instead of raising

        Returns:
            Successful sub-responses in request order
        """
        responses: List[Dict[str, Any]] = []
        for start in range(0, len(requests), BATCH_LIMIT):
            chunk = []
            for offset, request in enumerate(requests[start:start + BATCH_LIMIT]):
                item = {'id': str(start + offset), 'method': request['method'], 'url': request['url']}
                if 'body' in request:
                    item['body'] = request['body']
                    item['headers'] = {'Content-Type': 'application/json'}
                chunk.append(item)

            result = await self._make_request("POST", "/$batch", json_data={'requests': chunk})
            by_id = {r.get('id'): r for r in result.get('responses', [])}

            for item in chunk:
                response = by_id.get(item['id'], {})
                status = int(response.get('status', 500))
                if status >= 400:
                    if allow_missing and status == 404:
                        logger.debug(f"Graph batch request {item['url']} not found, skipping")
                        continue
                    raise _error_from_body(status, response.get('body'), f"Batch request {item['url']} failed")
                responses.append({**response, 'request': item})
        return responses

    @staticmethod
    def _validate_page_token(page_token: str) -> str:
        """Only accept next links that point back at Graph."""
        if not page_token.startswith(f"{GRAPH_BASE_URL}/"):
            raise ValueError("Invalid page token")
        return page_token

    # ==================== Parsing ====================

    def _parse_message(
        self,
        msg: Dict[str, Any],
        decoded_body: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
    ) -> ParsedMessage:
        """Parse Graph API message to ParsedMessage."""
        from_data = (msg.get('from') or {}).get('emailAddress') or {}
        sender = EmailAddress(
            name=from_data.get('name') or '',
            email=from_data.get('address') or '',
        ) if from_data.get('address') else unknown_sender()

        headers: Dict[str, str] = {}
        received: List[str] = []
        for header in msg.get('internetMessageHeaders') or []:
            name = (header.get('name') or '').lower()
            value = header.get('value') or ''
            if name == 'received':
                received.append(value)
            else:
                headers.setdefault(name, value)

        reply_to = _recipients(msg.get('replyTo'))
        subject = decode_entities(msg.get('subject') or '')
        cc = msg.get('ccRecipients')

        return ParsedMessage(
            id=msg.get('id') or '',
            thread_id=msg.get('conversationId') or '',
            subject=subject or '(no subject)',
            sender=sender,
            received_on=msg.get('receivedDateTime') or datetime.now(timezone.utc).isoformat(),
            title=decode_entities(msg.get('bodyPreview') or ''),
            to=_recipients(msg.get('toRecipients')),
            cc=_recipients(cc) if cc else None,
            bcc=_recipients(msg.get('bccRecipients')),
            unread=not msg.get('isRead', False),
            message_id=msg.get('internetMessageId') or '',
            in_reply_to=headers.get('in-reply-to'),
            references=headers.get('references'),
            reply_to=reply_to[0].email if reply_to else headers.get('reply-to'),
            list_unsubscribe=headers.get('list-unsubscribe'),
            list_unsubscribe_post=headers.get('list-unsubscribe-post'),
            tags=[Label(id=cat, name=cat, type='category') for cat in msg.get('categories') or []],
            tls=was_sent_with_tls(received),
            decoded_body=decoded_body,
            attachments=attachments or [],
        )

    @staticmethod
    def _decode_body(body: Dict[str, Any]) -> str:
        content = body.get('content') or ''
        if (body.get('contentType') or 'text').lower() == 'html':
            return content
        return text_to_html(content)

    @staticmethod
    def _folder_label(folder: Dict[str, Any]) -> Label:
        return Label(id=folder.get('id', ''), name=folder.get('displayName', ''), type='folder')

    @staticmethod
    def _category_label(category: Dict[str, Any]) -> Label:
        # Graph category colors are preset names, not hex values
        return Label(
            id=category.get('id') or category.get('displayName', ''),
            name=category.get('displayName', ''),
            type='category',
            color=LabelColor(background_color=category.get('color') or '', text_color=''),
        )

    def _build_message(self, data: OutgoingMessage) -> Dict[str, Any]:
        """Build a Graph message resource from an outgoing payload."""
        message: Dict[str, Any] = {
            'subject': data.subject,
            'body': {
                'contentType': 'html',
                'content': sanitize_html(data.message.strip()),
            },
            'toRecipients': _to_recipients(data.to),
        }
        if data.cc:
            message['ccRecipients'] = _to_recipients(data.cc)
        if data.bcc:
            message['bccRecipients'] = _to_recipients(data.bcc)
        if data.from_email:
            message['from'] = {'emailAddress': {'name': self.connection.name, 'address': data.from_email}}

        custom_headers = []
        for name, value in data.headers.items():
            if value is None:
                continue
            # Graph only accepts custom X- headers on outgoing mail
            if name.lower().startswith('x-'):
                custom_headers.append({'name': name, 'value': str(value)})
            else:
                logger.warning(f"Header {name} cannot be set through Microsoft Graph, ignoring")
        if custom_headers:
            message['internetMessageHeaders'] = custom_headers

        if data.attachments:
            message['attachments'] = [
                {
                    '@odata.type': '#microsoft.graph.fileAttachment',
                    'name': attachment.filename,
                    'contentType': attachment.mime_type or 'application/octet-stream',
                    'contentBytes': base64.b64encode(attachment.content).decode('ascii'),
                }
                for attachment in data.attachments
            ]
        return message

    # ==================== Messages ====================

    @operation('list')
    async def list(
        self,
        folder: str,
        query: Optional[str] = None,
        max_results: Optional[int] = None,
        label_ids: Optional[List[str]] = None,
        page_token: Optional[str] = None,
    ) -> ThreadList:
        """List messages in a folder, newest first."""
        if page_token:
            result = await self._make_request("GET", url=self._validate_page_token(page_token))
        else:
            folder_id = FOLDER_IDS.get(folder.lower(), folder)
            params = self._list_params(query, max_results or DEFAULT_MAX_RESULTS)
            if label_ids:
                if query:
                    logger.warning("Graph cannot combine $search with $filter, ignoring label filter")
                else:
                    params['$filter'] = _category_filter(label_ids)
            result = await self._make_request("GET", f"/me/mailFolders/{folder_id}/messages", params=params)

        threads = [Thread.from_message(self._parse_message(msg)) for msg in result.get('value', [])]
        return ThreadList(threads=threads, next_page_token=result.get('@odata.nextLink'))

    @staticmethod
    def _list_params(query: Optional[str], max_results: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {'$top': max_results, '$select': LIST_SELECT}
        if query:
            escaped = query.replace('"', '\\"')
            params['$search'] = f'"{escaped}"'
        else:
            # $search results come back in relevance order and reject $orderby
            params['$orderby'] = 'receivedDateTime desc'
        return params

    @operation('get')
    async def get(self, id: str) -> ThreadDetail:
        """Get one message with its body and attachment contents."""
        msg = await self._make_request(
            "GET",
            f"/me/messages/{id}",
            params={
                '$select': GET_SELECT,
                '$expand': 'attachments($select=id,name,size,contentType)',
            },
        )
        if not msg:
            raise NotFoundError(f"Message {id} not found")

        fetched = await _gather([
            self._fetch_attachment(msg.get('id') or id, att) for att in msg.get('attachments') or []
        ])
        parsed = self._parse_message(
            msg,
            decoded_body=self._decode_body(msg.get('body') or {}),
            attachments=[a for a in fetched if a is not None],
        )

        return ThreadDetail(
            messages=[parsed],
            latest=parsed,
            labels=list(parsed.tags),
            has_unread=parsed.unread,
            total_replies=1,
        )

    async def _fetch_attachment(self, message_id: str, att: Dict[str, Any]) -> Optional[Attachment]:
        if not att.get('id') or not att.get('name'):
            return None
        try:
            content = await self._make_request("GET", f"/me/messages/{message_id}/attachments/{att['id']}")
        except ProviderHTTPError as e:
            if e.status_code != 404:
                raise
            logger.warning(f"Attachment {att['id']} of message {message_id} disappeared, skipping")
            return None
        if not content.get('contentBytes'):
            return None
        return Attachment(
            attachment_id=att['id'],
            filename=att['name'],
            mime_type=att.get('contentType') or 'application/octet-stream',
            size=att.get('size') or 0,
            body=content['contentBytes'],
        )

    @operation('create')
    async def create(self, data: OutgoingMessage) -> Dict[str, Any]:
        """Send a message, saving a copy to Sent Items."""
        return await self._make_request(
            "POST",
            "/me/sendMail",
            json_data={'message': self._build_message(data), 'saveToSentItems': True},
        )

    @operation('delete')
    async def delete(self, id: str) -> None:
        try:
            await self._request("DELETE", f"/me/messages/{id}")
        except ProviderHTTPError as e:
            if e.status_code != 404:
                raise
            logger.info(f"Outlook message {id} already deleted")

    async def _set_read_status(self, ids: List[str], is_read: bool) -> None:
        await self._batch([
            {'method': 'PATCH', 'url': f"/me/messages/{message_id}", 'body': {'isRead': is_read}}
            for message_id in ids
        ])

    @operation('mark_as_read')
    async def mark_as_read(self, ids: List[str]) -> None:
        if not ids:
            return
        await self._set_read_status(ids, True)

    @operation('mark_as_unread')
    async def mark_as_unread(self, ids: List[str]) -> None:
        if not ids:
            return
        await self._set_read_status(ids, False)

    @operation('modify_labels')
    async def modify_labels(self, ids: List[str], add_labels: List[str], remove_labels: List[str]) -> None:
        """
        Approximate label changes with folder moves.

        A message lives in exactly one folder, so the first added label that
        names a folder moves every message there. Everything else has no
        Outlook equivalent and is only logged.
        """
        if not ids:
            return

        destination = None
        for label in add_labels:
            if label.lower() in FOLDER_IDS:
                destination = FOLDER_IDS[label.lower()]
                break

        ignored = [
            l for l in add_labels
            if destination is None or FOLDER_IDS.get(l.lower()) != destination
        ] + list(remove_labels)
        if ignored:
            logger.warning(f"Outlook cannot apply label changes {ignored}, ignoring")
        if destination is None:
            return

        await self._batch([
            {'method': 'POST', 'url': f"/me/messages/{message_id}/move", 'body': {'destinationId': destination}}
            for message_id in ids
        ])

    @operation('count')
    async def count(self) -> List[UnreadCount]:
        responses = await self._batch(
            [
                {'method': 'GET', 'url': f"/me/mailFolders/{folder}?$select=id,unreadItemCount"}
                for folder in COUNT_FOLDERS
            ],
            allow_missing=True,
        )
        counts = []
        for response in responses:
            folder = response['request']['url'].split('/')[-1].split('?')[0]
            unread = (response.get('body') or {}).get('unreadItemCount')
            if unread is not None:
                counts.append(UnreadCount(label=COUNT_FOLDERS[folder], count=int(unread)))
        return counts

    @operation('get_attachment')
    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        attachment = await self._make_request("GET", f"/me/messages/{message_id}/attachments/{attachment_id}")
        content = attachment.get('contentBytes')
        if not content:
            raise NotFoundError("Attachment data not found")
        return base64.b64decode(content)

    # ==================== Account ====================

    @operation('get_user_info')
    async def get_user_info(self) -> UserInfo:
        user = await self._make_request("GET", "/me", params={'$select': 'displayName,mail,userPrincipalName'})
        return UserInfo(
            address=user.get('mail') or user.get('userPrincipalName') or '',
            name=user.get('displayName') or '',
            photo=await self._get_photo(),
        )

    async def _get_photo(self) -> str:
        """Profile photo as a data URL; accounts without one get an empty string."""
        try:
            response = await self._request("GET", "/me/photo/$value")
        except (ProviderHTTPError, httpx.HTTPError) as e:
            logger.debug(f"No Outlook profile photo available: {e}")
            return ''
        content_type = response.headers.get('content-type', 'image/jpeg')
        return f"data:{content_type};base64,{base64.b64encode(response.content).decode('ascii')}"

    @operation('get_email_aliases')
    async def get_email_aliases(self) -> List[EmailAlias]:
        user = await self._make_request(
            "GET", "/me", params={'$select': 'displayName,mail,userPrincipalName,proxyAddresses'}
        )
        name = user.get('displayName') or ''
        primary = user.get('mail') or user.get('userPrincipalName') or ''
        aliases = [EmailAlias(email=primary, name=name, primary=True)] if primary else []

        for address in user.get('proxyAddresses') or []:
            scheme, _, email = address.partition(':')
            if scheme.lower() != 'smtp' or not email:
                continue
            if email.lower() not in {a.email.lower() for a in aliases}:
                aliases.append(EmailAlias(email=email, name=name, primary=False))
        return aliases

    @operation('get_tokens')
    async def get_tokens(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens."""
        return await asyncio.to_thread(self.tokens.exchange_code, code, MICROSOFT_SCOPES)

    @operation('get_scope')
    def get_scope(self) -> str:
        return ' '.join(MICROSOFT_SCOPES)

    @operation('revoke_refresh_token')
    async def revoke_refresh_token(self, refresh_token: str) -> bool:
        if refresh_token:
            logger.info("Microsoft refresh tokens cannot be revoked through Graph")
        return False

    # ==================== Labels ====================

    @operation('get_user_labels')
    async def get_user_labels(self) -> List[Label]:
        categories = await self._make_request("GET", "/me/outlook/masterCategories")
        labels = [self._category_label(c) for c in categories.get('value', [])]

        page = await self._make_request("GET", "/me/mailFolders", params={'$top': 100})
        while True:
            labels.extend(self._folder_label(f) for f in page.get('value', []))
            next_link = page.get('@odata.nextLink')
            if not next_link:
                return labels
            page = await self._make_request("GET", url=self._validate_page_token(next_link))

    @staticmethod
    def _is_missing(error: ProviderHTTPError) -> bool:
        # Category ids are rejected as malformed folder ids
        return error.status_code in (400, 404)

    @operation('get_label')
    async def get_label(self, id: str) -> Label:
        """Get a folder, falling back to a category with the same id."""
        try:
            return self._folder_label(await self._make_request("GET", f"/me/mailFolders/{id}"))
        except ProviderHTTPError as e:
            if not self._is_missing(e):
                raise
        try:
            return self._category_label(await self._make_request("GET", f"/me/outlook/masterCategories/{id}"))
        except ProviderHTTPError as e:
            if not self._is_missing(e):
                raise
            raise NotFoundError(f"Label {id} not found as folder or category") from e

    @operation('create_label')
    async def create_label(self, name: str, color: Optional[LabelColor] = None) -> Label:
        if color is not None:
            logger.debug("Outlook folders have no color, ignoring")
        folder = await self._make_request("POST", "/me/mailFolders", json_data={'displayName': name})
        return self._folder_label(folder)

    @operation('update_label')
    async def update_label(self, id: str, name: str, color: Optional[LabelColor] = None) -> Label:
        try:
            folder = await self._make_request("PATCH", f"/me/mailFolders/{id}", json_data={'displayName': name})
            return self._folder_label(folder)
        except ProviderHTTPError as e:
            if not self._is_missing(e):
                raise
        try:
            category = await self._make_request(
                "PATCH", f"/me/outlook/masterCategories/{id}", json_data={'displayName': name}
            )
        except ProviderHTTPError as e:
            if not self._is_missing(e):
                raise
            raise NotFoundError(f"Label {id} not found as folder or category") from e
        return self._category_label(category)

    @operation('delete_label')
    async def delete_label(self, id: str) -> None:
        try:
            await self._request("DELETE", f"/me/mailFolders/{id}")
            return
        except ProviderHTTPError as e:
            if not self._is_missing(e):
                raise
        try:
            await self._request("DELETE", f"/me/outlook/masterCategories/{id}")
        except ProviderHTTPError as e:
            if not self._is_missing(e):
                raise
            raise NotFoundError(f"Label {id} not found as folder or category") from e

    # ==================== Drafts ====================

    @operation('list_drafts')
    async def list_drafts(
        self,
        query: Optional[str] = None,
        max_results: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> ThreadList:
        if page_token:
            result = await self._make_request("GET", url=self._validate_page_token(page_token))
        else:
            params = self._list_params(query, max_results or DEFAULT_DRAFT_MAX_RESULTS)
            result = await self._make_request("GET", "/me/mailFolders/drafts/messages", params=params)

        threads = [
            Thread.from_message(self._parse_message(msg), unread=False)
            for msg in result.get('value', [])
        ]
        return ThreadList(threads=threads, next_page_token=result.get('@odata.nextLink'))

    @operation('get_draft')
    async def get_draft(self, id: str) -> Draft:
        msg = await self._make_request(
            "GET",
            f"/me/messages/{id}",
            params={'$select': 'id,subject,body,toRecipients,ccRecipients,bccRecipients'},
        )
        if not msg:
            raise NotFoundError(f"Draft {id} not found")
        return Draft(
            id=msg.get('id') or id,
            to=[a.email for a in _recipients(msg.get('toRecipients')) if a.email],
            cc=[a.email for a in _recipients(msg.get('ccRecipients')) if a.email],
            bcc=[a.email for a in _recipients(msg.get('bccRecipients')) if a.email],
            subject=decode_entities(msg.get('subject') or ''),
            content=self._decode_body(msg.get('body') or {}),
        )

    async def _update_draft(self, draft_id: str, data: OutgoingMessage) -> Dict[str, Any]:
        message = self._build_message(data)
        # Attachments cannot be patched onto an existing message
        attachments = message.pop('attachments', [])
        result = await self._make_request("PATCH", f"/me/messages/{draft_id}", json_data=message)
        await _gather([
            self._make_request("POST", f"/me/messages/{draft_id}/attachments", json_data=attachment)
            for attachment in attachments
        ])
        return result

    @operation('create_draft')
    async def create_draft(self, data: DraftData) -> Dict[str, Any]:
        """Create a draft, or update it in place when data.id is set."""
        if data.id:
            return await self._update_draft(data.id, data)
        return await self._make_request("POST", "/me/messages", json_data=self._build_message(data))

    @operation('send_draft')
    async def send_draft(self, id: str, data: Optional[DraftData] = None) -> Dict[str, Any]:
        if data is not None:
            await self._update_draft(id, data)
        await self._request("POST", f"/me/messages/{id}/send")
        return {'id': id}
