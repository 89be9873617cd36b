"""
Abstract base class for mail provider drivers.
Defines the canonical model and the operation set every driver implements.
"""

import functools
import inspect
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import DriverSettings
from ..errors import (
    DriverError,
    ErrorKind,
    classify_error,
    get_error_code,
    get_error_message,
    get_status_code,
    sanitize_context,
)
from ..storage import ConnectionRecord, ConnectionStore
from ..tokens import OAuthTokens, TokenSupplier

logger = logging.getLogger(__name__)

# Substituted whenever a provider omits an identifier
MISSING_ID = "ERROR"

THREAD_PREFIX = "thread:"

DEFAULT_MAX_RESULTS = 100
DEFAULT_DRAFT_MAX_RESULTS = 20

# Canonical folder tokens accepted by list()
CANONICAL_FOLDERS = ('inbox', 'sent', 'drafts', 'trash', 'bin', 'archive', 'junk', 'spam')

# Received header fragments written by MTAs that negotiated TLS
TLS_PATTERN = re.compile(r'with ESMTPS|using TLS|version=TLS', re.IGNORECASE)


class ProviderType(str, Enum):
    """Supported mail provider types."""
    GOOGLE = "google"
    MICROSOFT = "microsoft"


class Serializable:
    """Mixin giving model dataclasses a dict form for the response layer."""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EmailAddress(Serializable):
    """A name and address pair."""
    name: str = ""
    email: str = ""


def unknown_sender() -> EmailAddress:
    """Sender used when a provider message carries none."""
    return EmailAddress(name="Unknown", email="unknown@example.com")


def was_sent_with_tls(received_headers: Sequence[str]) -> bool:
    """True when any Received header records a TLS hop."""
    return any(TLS_PATTERN.search(value) for value in received_headers)


@dataclass
class LabelColor(Serializable):
    background_color: str = ""
    text_color: str = ""


@dataclass
class Label(Serializable):
    """
    A label, folder or category.

    The type vocabulary belongs to the provider: Gmail uses "system" and
    "user", Microsoft uses "folder" and "category".
    """
    id: str
    name: str
    type: str = "user"
    color: Optional[LabelColor] = None


@dataclass
class Attachment(Serializable):
    """Attachment metadata, with base64 content when fully fetched."""
    attachment_id: str
    filename: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""


@dataclass
class ParsedMessage(Serializable):
    """Standardized email message structure across all providers."""
    id: str
    thread_id: str
    subject: str
    sender: EmailAddress
    received_on: str

    # Optional fields
    title: str = ""
    to: List[EmailAddress] = field(default_factory=list)
    cc: Optional[List[EmailAddress]] = None
    bcc: List[EmailAddress] = field(default_factory=list)
    unread: bool = False
    message_id: str = ""
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    reply_to: Optional[str] = None
    list_unsubscribe: Optional[str] = None
    list_unsubscribe_post: Optional[str] = None
    tags: List[Label] = field(default_factory=list)
    tls: bool = False
    decoded_body: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)

    def __post_init__(self):
        if not self.id:
            self.id = MISSING_ID
        if not self.thread_id:
            self.thread_id = self.id
        if not self.message_id:
            self.message_id = self.id
        if self.sender is None:
            self.sender = unknown_sender()


@dataclass
class Thread(Serializable):
    """
    List view of one conversation.

    Body and attachments are always empty here; they are only fetched by
    get() to keep list responses small.
    """
    id: str
    title: str
    subject: str
    sender: EmailAddress
    unread: bool
    received_on: str
    tags: List[Label] = field(default_factory=list)
    total_replies: int = 0
    body: str = ""
    attachments: List[Attachment] = field(default_factory=list)

    def __post_init__(self):
        if not self.id:
            self.id = MISSING_ID

    @classmethod
    def from_message(cls, message: ParsedMessage, thread_id: Optional[str] = None,
                     total_replies: int = 1, unread: Optional[bool] = None) -> 'Thread':
        return cls(
            id=thread_id or message.id,
            title=message.title,
            subject=message.subject,
            sender=message.sender,
            unread=message.unread if unread is None else unread,
            received_on=message.received_on,
            tags=list(message.tags),
            total_replies=total_replies,
        )


@dataclass
class ThreadList(Serializable):
    threads: List[Thread]
    next_page_token: Optional[str] = None


@dataclass
class ThreadDetail(Serializable):
    """A fully fetched conversation with thread level aggregates."""
    messages: List[ParsedMessage]
    latest: Optional[ParsedMessage]
    labels: List[Label] = field(default_factory=list)
    has_unread: bool = False
    total_replies: int = 0


@dataclass
class OutgoingAttachment(Serializable):
    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"


@dataclass
class OutgoingMessage(Serializable):
    """Payload for sending a message or saving a draft."""
    to: List[EmailAddress] = field(default_factory=list)
    subject: str = ""
    message: str = ""
    cc: List[EmailAddress] = field(default_factory=list)
    bcc: List[EmailAddress] = field(default_factory=list)
    attachments: List[OutgoingAttachment] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    from_email: Optional[str] = None
    thread_id: Optional[str] = None


@dataclass
class DraftData(OutgoingMessage):
    """Draft payload; an id means the draft is updated in place."""
    id: Optional[str] = None


@dataclass
class Draft(Serializable):
    id: str
    to: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    subject: str = ""
    content: str = ""


@dataclass
class UnreadCount(Serializable):
    label: str
    count: int


@dataclass
class UserInfo(Serializable):
    address: str
    name: str = ""
    photo: str = ""


@dataclass
class EmailAlias(Serializable):
    email: str
    name: str = ""
    primary: bool = False


@dataclass
class DriverConfig:
    """Everything a driver instance is bound to for one request."""
    connection: ConnectionRecord
    settings: DriverSettings
    store: Optional[ConnectionStore] = None


def _bind_context(func: Callable, args: tuple, kwargs: dict) -> Dict[str, Any]:
    try:
        bound = inspect.signature(func).bind_partial(*args, **kwargs)
    except TypeError:
        return {'args': list(args[1:]), **kwargs}
    context = dict(bound.arguments)
    context.pop('self', None)
    return context


def operation(name: str):
    """
    Run a driver operation inside the standard error handler.

    Any failure is classified, logged with a redacted context, triggers
    deletion of the connection when fatal and is re-raised as DriverError.
    Works for both async and plain methods so no code path can skip it.
    """
    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(self, *args, **kwargs):
                try:
                    return await func(self, *args, **kwargs)
                except DriverError:
                    raise
                except Exception as e:
                    context = _bind_context(func, (self,) + args, kwargs)
                    raise self._handle_error(name, e, context) from e
            async_wrapper.operation_name = name
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except DriverError:
                raise
            except Exception as e:
                context = _bind_context(func, (self,) + args, kwargs)
                raise self._handle_error(name, e, context) from e
        sync_wrapper.operation_name = name
        return sync_wrapper

    return decorator


class MailDriver(ABC):
    """
    Abstract base class for mail provider drivers.

    All providers (Gmail, Microsoft Graph) implement this interface. A
    driver instance is bound to one connection and used for one request.
    """

    display_name = "Mail"

    def __init__(self, config: DriverConfig):
        """
        Initialize the driver.

        Args:
            config: Connection, settings and the store used for invalidation
        """
        self.config = config
        self.tokens = self._create_token_supplier()

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Return the provider type identifier."""
        pass

    @property
    def connection(self) -> ConnectionRecord:
        return self.tokens.connection

    @abstractmethod
    def _create_token_supplier(self) -> TokenSupplier:
        pass

    # ==================== Error Handling ====================

    def _handle_error(self, operation_name: str, error: Exception, context: Dict[str, Any]) -> DriverError:
        """Classify, log and (when fatal) invalidate; returns the error to raise."""
        provider = self.provider_type.value
        kind = classify_error(error, provider)
        context = sanitize_context({**context, 'email': self.connection.email})
        status_code = get_status_code(error)
        code = get_error_code(error)
        message = get_error_message(error)

        tag = 'FATAL_ERROR' if kind is ErrorKind.FATAL else 'ERROR'
        log = logger.warning if kind is ErrorKind.NOT_FOUND else logger.error
        log(
            f"[{tag}] [{self.display_name} Driver] Operation: {operation_name} "
            f"kind={kind.value} status={status_code} code={code} error={message} context={context}",
            exc_info=error,
        )

        if kind is ErrorKind.FATAL:
            self._delete_connection()

        return DriverError(
            message,
            operation_name,
            context=context,
            kind=kind,
            provider=provider,
            status_code=status_code,
            code=code,
        )

    def _delete_connection(self) -> None:
        """Remove the stored credentials so the user has to reconnect."""
        store = self.config.store
        connection_id = self.connection.id
        if store is None or not connection_id:
            return
        try:
            store.delete(connection_id)
            logger.info(f"Removed {self.provider_type.value} connection {connection_id} after fatal error")
        except Exception as e:
            logger.error(f"Could not delete connection {connection_id}: {e}")

    # ==================== Shared Operations ====================

    @operation('normalize_ids')
    def normalize_ids(self, ids: Sequence[str]) -> List[str]:
        """Strip the thread: prefix the frontend uses for conversation ids."""
        return [i[len(THREAD_PREFIX):] if i.startswith(THREAD_PREFIX) else i for i in ids]

    # ==================== Messages ====================

    @abstractmethod
    async def list(
        self,
        folder: str,
        query: Optional[str] = None,
        max_results: Optional[int] = None,
        label_ids: Optional[List[str]] = None,
        page_token: Optional[str] = None,
    ) -> ThreadList:
        """
        List conversations in a folder.

        Args:
            folder: Canonical folder token or a provider folder/label id
            query: Provider search query
            max_results: Page size (provider default when None)
            label_ids: Only return conversations carrying these labels
            page_token: Opaque token from a previous page

        Returns:
            ThreadList in provider order
        """
        pass

    @abstractmethod
    async def get(self, id: str) -> ThreadDetail:
        """Fetch one conversation/message with decoded bodies and attachments."""
        pass

    @abstractmethod
    async def create(self, data: OutgoingMessage) -> Dict[str, Any]:
        """Send a message, keeping a copy in Sent."""
        pass

    @abstractmethod
    async def delete(self, id: str) -> None:
        """Delete a message. Deleting an already deleted id succeeds."""
        pass

    @abstractmethod
    async def mark_as_read(self, ids: List[str]) -> None:
        pass

    @abstractmethod
    async def mark_as_unread(self, ids: List[str]) -> None:
        pass

    @abstractmethod
    async def modify_labels(self, ids: List[str], add_labels: List[str], remove_labels: List[str]) -> None:
        pass

    @abstractmethod
    async def count(self) -> List[UnreadCount]:
        """Unread counts for the canonical folders the provider exposes."""
        pass

    @abstractmethod
    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        pass

    # ==================== Account ====================

    @abstractmethod
    async def get_user_info(self) -> UserInfo:
        pass

    @abstractmethod
    async def get_email_aliases(self) -> List[EmailAlias]:
        pass

    @abstractmethod
    async def get_tokens(self, code: str) -> OAuthTokens:
        pass

    @abstractmethod
    def get_scope(self) -> str:
        pass

    @abstractmethod
    async def revoke_refresh_token(self, refresh_token: str) -> bool:
        pass

    # ==================== Labels ====================

    @abstractmethod
    async def get_user_labels(self) -> List[Label]:
        pass

    @abstractmethod
    async def get_label(self, id: str) -> Label:
        pass

    @abstractmethod
    async def create_label(self, name: str, color: Optional[LabelColor] = None) -> Label:
        pass

    @abstractmethod
    async def update_label(self, id: str, name: str, color: Optional[LabelColor] = None) -> Label:
        pass

    @abstractmethod
    async def delete_label(self, id: str) -> None:
        pass

    # ==================== Drafts ====================

    @abstractmethod
    async def list_drafts(
        self,
        query: Optional[str] = None,
        max_results: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> ThreadList:
        pass

    @abstractmethod
    async def get_draft(self, id: str) -> Draft:
        pass

    @abstractmethod
    async def create_draft(self, data: DraftData) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def send_draft(self, id: str, data: Optional[DraftData] = None) -> Dict[str, Any]:
        pass
