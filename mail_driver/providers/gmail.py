"""
Gmail driver implementation.
Uses the Google Gmail API for mail access.
"""

import asyncio
import base64
import logging
from datetime import datetime, timezone
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, getaddresses, parseaddr, parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..errors import NotFoundError, get_status_code
from ..sanitize import decode_entities, sanitize_html, text_to_html
from ..tokens import GoogleTokenSupplier, OAuthTokens
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

GMAIL_SCOPES = [
    'https://mail.google.com/',
    'https://www.googleapis.com/auth/userinfo.profile',
    'https://www.googleapis.com/auth/userinfo.email',
]

USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"

# Canonical folder token -> system label
FOLDER_LABELS = {
    'inbox': 'INBOX',
    'sent': 'SENT',
    'drafts': 'DRAFT',
    'trash': 'TRASH',
    'bin': 'TRASH',
    'junk': 'SPAM',
    'spam': 'SPAM',
}

# Gmail has no archive label; archived mail is mail outside these
ARCHIVE_QUERY = '-in:inbox -in:spam -in:trash -in:drafts'

# System label -> canonical folder token reported by count()
COUNT_LABELS = {
    'INBOX': 'inbox',
    'SENT': 'sent',
    'DRAFT': 'drafts',
    'TRASH': 'trash',
    'SPAM': 'junk',
}

METADATA_HEADERS = ['From', 'To', 'Cc', 'Subject', 'Date', 'Message-ID', 'Received']

# Gmail accepts at most 100 calls per batch request
BATCH_LIMIT = 100


def _decode_base64(data: str) -> bytes:
    """Decode base64url encoded data, adding padding if needed."""
    padding = 4 - len(data) % 4
    if padding != 4:
        data += '=' * padding
    return base64.urlsafe_b64decode(data)


def _to_standard_base64(data: str) -> str:
    return base64.b64encode(_decode_base64(data)).decode('ascii')


def _chunks(items: List[Any], size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class GmailDriver(MailDriver):
    """
    Gmail driver using the Google API client.

    The client library is synchronous and not thread-safe, so every
    operation runs all of its calls in one worker thread.
    """

    display_name = "Gmail"

    def __init__(self, config, service: Optional[Any] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize Gmail driver.

        Args:
            config: DriverConfig bound to a Google connection
            service: Prebuilt Gmail API resource (built on first use when None)
            transport: httpx transport for the OAuth endpoints
        """
        self._service = service
        self._transport = transport
        super().__init__(config)

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GOOGLE

    def _create_token_supplier(self) -> GoogleTokenSupplier:
        return GoogleTokenSupplier(self.config.connection, self.config.settings, self.config.store)

    async def _get_service(self) -> Any:
        """Get or create Gmail API service."""
        token = await self.tokens.get_access_token()
        if self._service is None:
            self._service = build('gmail', 'v1', credentials=Credentials(token=token), cache_discovery=False)
        return self._service

    async def _run(self, fn: Callable, *args: Any) -> Any:
        service = await self._get_service()
        return await asyncio.to_thread(fn, service, *args)

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self.config.settings.request_timeout)

    def _batch_execute(self, service: Any, requests: List[Tuple[str, Any]]) -> Dict[str, Any]:
        """
        Execute API requests as batch HTTP requests.

        Sub-requests answering 404 are left out of the result; the first
        other failure is raised once the batch completes.
        """
        results: Dict[str, Any] = {}
        errors: List[Exception] = []

        def callback(request_id, response, exception):
            if exception is not None:
                if get_status_code(exception) == 404:
                    logger.warning(f"Gmail batch item {request_id} not found, skipping")
                else:
                    errors.append(exception)
                return
            results[request_id] = response

        for chunk in _chunks(requests, BATCH_LIMIT):
            batch = service.new_batch_http_request(callback=callback)
            for request_id, request in chunk:
                batch.add(request, request_id=request_id)
            batch.execute()

        if errors:
            raise errors[0]
        return results

    # ==================== Parsing ====================

    def _normalize_search(self, folder: str, query: Optional[str]) -> Tuple[List[str], Optional[str]]:
        """Map a canonical folder token to label ids and a search query."""
        token = folder.lower()
        if token == 'archive':
            q = f"{ARCHIVE_QUERY} {query}" if query else ARCHIVE_QUERY
            return [], q
        label = FOLDER_LABELS.get(token, folder)
        return [label], query

    @staticmethod
    def _headers(payload: Dict[str, Any]) -> Dict[str, str]:
        return {h.get('name', '').lower(): h.get('value', '') for h in payload.get('headers', [])}

    @staticmethod
    def _addresses(value: Optional[str]) -> List[EmailAddress]:
        if not value:
            return []
        return [EmailAddress(name=name, email=addr) for name, addr in getaddresses([value]) if addr]

    @staticmethod
    def _label_type(label_id: str) -> str:
        return 'user' if label_id.startswith('Label_') else 'system'

    @staticmethod
    def _received_with_tls(payload: Dict[str, Any]) -> bool:
        received = [h.get('value', '') for h in payload.get('headers', []) if h.get('name', '').lower() == 'received']
        return was_sent_with_tls(received)

    @staticmethod
    def _received_on(msg: Dict[str, Any], date_header: str) -> str:
        internal = msg.get('internalDate')
        if internal:
            try:
                return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc).isoformat()
            except (TypeError, ValueError):
                pass
        if date_header:
            try:
                return parsedate_to_datetime(date_header).isoformat()
            except (TypeError, ValueError):
                pass
        return datetime.now(timezone.utc).isoformat()

    def _parse_message(
        self,
        msg: Dict[str, Any],
        decoded_body: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
    ) -> ParsedMessage:
        """Parse a Gmail API message (any format) to ParsedMessage."""
        payload = msg.get('payload', {})
        headers = self._headers(payload)

        from_header = headers.get('from', '')
        sender_name, sender_email = parseaddr(from_header)
        sender = EmailAddress(name=sender_name, email=sender_email) if sender_email else unknown_sender()

        label_ids = msg.get('labelIds', [])
        tags = [Label(id=l, name=l, type=self._label_type(l)) for l in label_ids]

        subject = decode_entities(headers.get('subject', ''))

        return ParsedMessage(
            id=msg.get('id', ''),
            thread_id=msg.get('threadId', ''),
            subject=subject or '(no subject)',
            sender=sender,
            received_on=self._received_on(msg, headers.get('date', '')),
            title=decode_entities(msg.get('snippet', '')),
            to=self._addresses(headers.get('to')),
            cc=self._addresses(headers['cc']) if 'cc' in headers else None,
            bcc=self._addresses(headers.get('bcc')),
            unread='UNREAD' in label_ids,
            message_id=headers.get('message-id', ''),
            in_reply_to=headers.get('in-reply-to'),
            references=headers.get('references'),
            reply_to=headers.get('reply-to'),
            list_unsubscribe=headers.get('list-unsubscribe'),
            list_unsubscribe_post=headers.get('list-unsubscribe-post'),
            tags=tags,
            tls=self._received_with_tls(payload),
            decoded_body=decoded_body,
            attachments=attachments or [],
        )

    def _extract_body(self, payload: Dict[str, Any]) -> str:
        """Return render-ready HTML for a message payload."""
        html_body: Optional[str] = None
        text_body: Optional[str] = None

        def walk(part: Dict[str, Any]):
            nonlocal html_body, text_body
            if part.get('filename'):
                return
            mime_type = part.get('mimeType', '')
            data = part.get('body', {}).get('data')
            if data and mime_type == 'text/html' and html_body is None:
                html_body = _decode_base64(data).decode('utf-8', errors='replace')
            elif data and mime_type == 'text/plain' and text_body is None:
                text_body = _decode_base64(data).decode('utf-8', errors='replace')
            for subpart in part.get('parts', []):
                walk(subpart)

        walk(payload)
        if html_body is not None:
            return html_body
        return text_to_html(text_body or '')

    @staticmethod
    def _attachment_parts(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        parts = []

        def walk(part: Dict[str, Any]):
            if part.get('filename'):
                parts.append(part)
            for subpart in part.get('parts', []):
                walk(subpart)

        walk(payload)
        return parts

    def _thread_summary(self, data: Dict[str, Any]) -> Optional[Thread]:
        messages = data.get('messages') or []
        if not messages:
            return None
        latest = self._parse_message(messages[-1])
        unread = any('UNREAD' in m.get('labelIds', []) for m in messages)
        return Thread.from_message(latest, thread_id=data.get('id'), total_replies=len(messages), unread=unread)

    def _parse_label(self, label: Dict[str, Any]) -> Label:
        color = label.get('color')
        return Label(
            id=label.get('id', ''),
            name=label.get('name', ''),
            type=label.get('type', self._label_type(label.get('id', ''))),
            color=LabelColor(
                background_color=color.get('backgroundColor', ''),
                text_color=color.get('textColor', ''),
            ) if color else None,
        )

    def _parse_draft(self, draft: Dict[str, Any]) -> Draft:
        msg = draft.get('message', {})
        payload = msg.get('payload', {})
        headers = self._headers(payload)
        return Draft(
            id=draft.get('id', ''),
            to=[a.email for a in self._addresses(headers.get('to'))],
            cc=[a.email for a in self._addresses(headers.get('cc'))],
            bcc=[a.email for a in self._addresses(headers.get('bcc'))],
            subject=decode_entities(headers.get('subject', '')),
            content=self._extract_body(payload),
        )

    def _build_raw_message(self, data: OutgoingMessage) -> str:
        """Build a base64url encoded MIME message from an outgoing payload."""
        msg = MIMEMultipart('mixed')
        msg.attach(MIMEText(sanitize_html(data.message), 'html', 'utf-8'))

        msg['To'] = ', '.join(formataddr((r.name, r.email)) for r in data.to)
        if data.cc:
            msg['Cc'] = ', '.join(formataddr((r.name, r.email)) for r in data.cc)
        if data.bcc:
            msg['Bcc'] = ', '.join(formataddr((r.name, r.email)) for r in data.bcc)
        msg['Subject'] = data.subject
        if data.from_email:
            msg['From'] = formataddr((self.connection.name, data.from_email))

        for name, value in data.headers.items():
            if value is None:
                continue
            if name in msg:
                del msg[name]
            msg[name] = str(value)

        for attachment in data.attachments:
            maintype, _, subtype = (attachment.mime_type or 'application/octet-stream').partition('/')
            part = MIMEBase(maintype, subtype or 'octet-stream')
            part.set_payload(attachment.content)
            encoders.encode_base64(part)
            part.add_header('Content-Disposition', 'attachment', filename=attachment.filename)
            msg.attach(part)

        return base64.urlsafe_b64encode(msg.as_bytes()).decode('ascii')

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
        """List threads in a folder, most recent first."""
        folder_labels, q = self._normalize_search(folder, query)
        labels = folder_labels + [l for l in (label_ids or []) if l not in folder_labels]
        return await self._run(self._list_threads, labels, q, max_results or DEFAULT_MAX_RESULTS, page_token)

    def _list_threads(self, service, label_ids, q, max_results, page_token) -> ThreadList:
        params: Dict[str, Any] = {'userId': 'me', 'maxResults': max_results}
        if label_ids:
            params['labelIds'] = label_ids
        if q:
            params['q'] = q
        if page_token:
            params['pageToken'] = page_token

        response = service.users().threads().list(**params).execute()
        refs = response.get('threads', [])

        details = self._batch_execute(service, [
            (ref['id'], service.users().threads().get(
                userId='me', id=ref['id'], format='metadata', metadataHeaders=METADATA_HEADERS
            ))
            for ref in refs
        ])

        threads = []
        for ref in refs:
            data = details.get(ref['id'])
            summary = self._thread_summary(data) if data else None
            if summary is not None:
                threads.append(summary)

        return ThreadList(threads=threads, next_page_token=response.get('nextPageToken'))

    @operation('get')
    async def get(self, id: str) -> ThreadDetail:
        """Get a full thread with decoded bodies and attachments."""
        return await self._run(self._get_thread, id)

    def _get_thread(self, service, thread_id: str) -> ThreadDetail:
        data = service.users().threads().get(userId='me', id=thread_id, format='full').execute()
        raw_messages = data.get('messages') or []
        if not raw_messages:
            raise NotFoundError(f"Thread {thread_id} not found")

        # Fetch all attachment bodies in one round trip
        pending: List[Tuple[str, Any]] = []
        part_keys: Dict[Tuple[int, int], str] = {}
        for position, msg in enumerate(raw_messages):
            for index, part in enumerate(self._attachment_parts(msg.get('payload', {}))):
                attachment_id = part.get('body', {}).get('attachmentId')
                if attachment_id and msg.get('id') and not part.get('body', {}).get('data'):
                    request_id = str(len(pending))
                    part_keys[(position, index)] = request_id
                    pending.append((request_id, service.users().messages().attachments().get(
                        userId='me', messageId=msg['id'], id=attachment_id
                    )))
        contents = self._batch_execute(service, pending) if pending else {}

        messages = []
        for position, msg in enumerate(raw_messages):
            attachments: List[Attachment] = []
            for index, part in enumerate(self._attachment_parts(msg.get('payload', {}))):
                body = part.get('body', {})
                data_b64 = body.get('data')
                if not data_b64:
                    fetched = contents.get(part_keys.get((position, index), ''), {})
                    data_b64 = fetched.get('data')
                if not data_b64:
                    continue
                attachments.append(Attachment(
                    attachment_id=body.get('attachmentId', ''),
                    filename=part.get('filename', ''),
                    mime_type=part.get('mimeType', 'application/octet-stream'),
                    size=body.get('size', 0),
                    headers=self._headers(part),
                    body=_to_standard_base64(data_b64),
                ))
            messages.append(self._parse_message(
                msg,
                decoded_body=self._extract_body(msg.get('payload', {})),
                attachments=attachments,
            ))

        labels: Dict[str, Label] = {}
        for message in messages:
            for tag in message.tags:
                labels.setdefault(tag.id, tag)

        return ThreadDetail(
            messages=messages,
            latest=messages[-1],
            labels=list(labels.values()),
            has_unread=any(m.unread for m in messages),
            total_replies=len(messages),
        )

    @operation('create')
    async def create(self, data: OutgoingMessage) -> Dict[str, Any]:
        """Send a message. Gmail always keeps the sent copy."""
        body: Dict[str, Any] = {'raw': self._build_raw_message(data)}
        if data.thread_id:
            body['threadId'] = data.thread_id
        return await self._run(lambda service: service.users().messages().send(userId='me', body=body).execute())

    @operation('delete')
    async def delete(self, id: str) -> None:
        """Move a message to the trash."""
        await self._run(self._trash_message, id)

    def _trash_message(self, service, message_id: str) -> None:
        try:
            service.users().messages().trash(userId='me', id=message_id).execute()
        except HttpError as e:
            if get_status_code(e) != 404:
                raise
            logger.info(f"Gmail message {message_id} already deleted")

    @operation('mark_as_read')
    async def mark_as_read(self, ids: List[str]) -> None:
        if not ids:
            return
        await self._run(self._modify_threads, ids, [], ['UNREAD'])

    @operation('mark_as_unread')
    async def mark_as_unread(self, ids: List[str]) -> None:
        if not ids:
            return
        await self._run(self._modify_threads, ids, ['UNREAD'], [])

    @operation('modify_labels')
    async def modify_labels(self, ids: List[str], add_labels: List[str], remove_labels: List[str]) -> None:
        if not ids or not (add_labels or remove_labels):
            return
        await self._run(self._modify_threads, ids, list(add_labels), list(remove_labels))

    def _modify_threads(self, service, thread_ids: List[str], add: List[str], remove: List[str]) -> None:
        body: Dict[str, Any] = {}
        if add:
            body['addLabelIds'] = add
        if remove:
            body['removeLabelIds'] = remove
        self._batch_execute(service, [
            (str(index), service.users().threads().modify(userId='me', id=thread_id, body=body))
            for index, thread_id in enumerate(thread_ids)
        ])

    @operation('count')
    async def count(self) -> List[UnreadCount]:
        return await self._run(self._count)

    def _count(self, service) -> List[UnreadCount]:
        labels = service.users().labels().list(userId='me').execute().get('labels', [])
        present = [l['id'] for l in labels if l.get('id') in COUNT_LABELS]
        details = self._batch_execute(service, [
            (label_id, service.users().labels().get(userId='me', id=label_id))
            for label_id in present
        ])
        return [
            UnreadCount(label=COUNT_LABELS[label_id], count=int(details[label_id].get('threadsUnread', 0)))
            for label_id in present
            if label_id in details
        ]

    @operation('get_attachment')
    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Download one attachment."""
        def fetch(service):
            return service.users().messages().attachments().get(
                userId='me', messageId=message_id, id=attachment_id
            ).execute()

        attachment = await self._run(fetch)
        data = (attachment or {}).get('data')
        if not data:
            raise NotFoundError("Attachment data not found")
        return _decode_base64(data)

    # ==================== Account ====================

    @operation('get_user_info')
    async def get_user_info(self) -> UserInfo:
        token = await self.tokens.get_access_token()
        async with self._http_client() as client:
            response = await client.get(USERINFO_URL, headers={"Authorization": f"Bearer {token}"})
            response.raise_for_status()
            info = response.json()
        return UserInfo(
            address=info.get('email', ''),
            name=info.get('name', ''),
            photo=info.get('picture', ''),
        )

    @operation('get_email_aliases')
    async def get_email_aliases(self) -> List[EmailAlias]:
        def fetch(service):
            return service.users().settings().sendAs().list(userId='me').execute()

        result = await self._run(fetch)
        aliases = [
            EmailAlias(
                email=alias.get('sendAsEmail', ''),
                name=alias.get('displayName', ''),
                primary=bool(alias.get('isPrimary')),
            )
            for alias in result.get('sendAs', [])
        ]
        aliases.sort(key=lambda a: not a.primary)
        return aliases

    @operation('get_tokens')
    async def get_tokens(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens."""
        return await asyncio.to_thread(self.tokens.exchange_code, code, GMAIL_SCOPES)

    @operation('get_scope')
    def get_scope(self) -> str:
        return ' '.join(GMAIL_SCOPES)

    @operation('revoke_refresh_token')
    async def revoke_refresh_token(self, refresh_token: str) -> bool:
        if not refresh_token:
            return False
        async with self._http_client() as client:
            try:
                response = await client.post(
                    REVOKE_URL,
                    data={'token': refresh_token},
                    headers={'Content-Type': 'application/x-www-form-urlencoded'},
                )
            except httpx.HTTPError as e:
                logger.warning(f"Failed to revoke Google token: {e}")
                return False
        return response.status_code == 200

    # ==================== Labels ====================

    @operation('get_user_labels')
    async def get_user_labels(self) -> List[Label]:
        result = await self._run(lambda service: service.users().labels().list(userId='me').execute())
        return [self._parse_label(label) for label in result.get('labels', [])]

    @operation('get_label')
    async def get_label(self, id: str) -> Label:
        result = await self._run(lambda service: service.users().labels().get(userId='me', id=id).execute())
        return self._parse_label(result)

    @staticmethod
    def _label_body(name: str, color: Optional[LabelColor]) -> Dict[str, Any]:
        body: Dict[str, Any] = {'name': name}
        if color is not None:
            body['color'] = {
                'backgroundColor': color.background_color,
                'textColor': color.text_color,
            }
        return body

    @operation('create_label')
    async def create_label(self, name: str, color: Optional[LabelColor] = None) -> Label:
        body = self._label_body(name, color)
        body['labelListVisibility'] = 'labelShow'
        body['messageListVisibility'] = 'show'
        result = await self._run(lambda service: service.users().labels().create(userId='me', body=body).execute())
        return self._parse_label(result)

    @operation('update_label')
    async def update_label(self, id: str, name: str, color: Optional[LabelColor] = None) -> Label:
        body = self._label_body(name, color)
        result = await self._run(
            lambda service: service.users().labels().patch(userId='me', id=id, body=body).execute()
        )
        return self._parse_label(result)

    @operation('delete_label')
    async def delete_label(self, id: str) -> None:
        await self._run(lambda service: service.users().labels().delete(userId='me', id=id).execute())

    # ==================== Drafts ====================

    @operation('list_drafts')
    async def list_drafts(
        self,
        query: Optional[str] = None,
        max_results: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> ThreadList:
        return await self._run(self._list_drafts, query, max_results or DEFAULT_DRAFT_MAX_RESULTS, page_token)

    def _list_drafts(self, service, q, max_results, page_token) -> ThreadList:
        params: Dict[str, Any] = {'userId': 'me', 'maxResults': max_results}
        if q:
            params['q'] = q
        if page_token:
            params['pageToken'] = page_token

        response = service.users().drafts().list(**params).execute()
        refs = response.get('drafts', [])
        details = self._batch_execute(service, [
            (ref['id'], service.users().drafts().get(userId='me', id=ref['id'], format='metadata'))
            for ref in refs
        ])

        threads = []
        for ref in refs:
            draft = details.get(ref['id'])
            if not draft:
                continue
            parsed = self._parse_message(draft.get('message', {}))
            threads.append(Thread.from_message(parsed, thread_id=draft.get('id'), unread=False))
        return ThreadList(threads=threads, next_page_token=response.get('nextPageToken'))

    @operation('get_draft')
    async def get_draft(self, id: str) -> Draft:
        result = await self._run(
            lambda service: service.users().drafts().get(userId='me', id=id, format='full').execute()
        )
        if not result or not result.get('message'):
            raise NotFoundError(f"Draft {id} not found")
        return self._parse_draft(result)

    def _draft_body(self, data: OutgoingMessage) -> Dict[str, Any]:
        message: Dict[str, Any] = {'raw': self._build_raw_message(data)}
        if data.thread_id:
            message['threadId'] = data.thread_id
        return {'message': message}

    @operation('create_draft')
    async def create_draft(self, data: DraftData) -> Dict[str, Any]:
        """Create a draft, or update it in place when data.id is set."""
        body = self._draft_body(data)

        def save(service):
            drafts = service.users().drafts()
            if data.id:
                return drafts.update(userId='me', id=data.id, body={'id': data.id, **body}).execute()
            return drafts.create(userId='me', body=body).execute()

        return await self._run(save)

    @operation('send_draft')
    async def send_draft(self, id: str, data: Optional[DraftData] = None) -> Dict[str, Any]:
        """Send a draft, saving the latest content first when given."""
        body = self._draft_body(data) if data is not None else None

        def send(service):
            drafts = service.users().drafts()
            if body is not None:
                drafts.update(userId='me', id=id, body={'id': id, **body}).execute()
            return drafts.send(userId='me', body={'id': id}).execute()

        return await self._run(send)
