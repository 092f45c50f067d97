"""
Simple SMTP Mail Sender

This module provides a small, synchronous layer over SMTP delivery: it holds
the transport configuration, resolves recipients with a layered fallback,
assembles a MIME multipart message (HTML body plus optional file attachments)
and submits it through smtplib.
"""

import os
import logging
import re
import smtplib
import ssl
import uuid
import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Sequence, Tuple, Union
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.mime.base import MIMEBase
from email.header import Header
from email import encoders
from email.utils import formataddr, formatdate, getaddresses

logger = logging.getLogger(__name__)


# Sender address pattern used when the SMTP host is inferred from the address
SENDER_ADDRESS_REGEX = re.compile(
    r'^[A-Za-z0-9一-龥][A-Za-z0-9\-_一-龥]+@[a-zA-Z0-9_-]+(\.[a-zA-Z0-9_-]+)+$'
)

# Minimal addr-spec shape accepted for recipients
ADDR_SPEC_REGEX = re.compile(r'^[^@\s<>(),;:"\[\]]+@[^@\s<>(),;:"\[\]]+$')

DEFAULT_SMTP_PORT = 25
DEFAULT_CHARSET = 'utf-8'
LINE_BREAK_TAG = '<br/>'
X_MAILER = 'SimpleMailSender'

PathLike = Union[str, 'os.PathLike[str]']


class MailErrorKind(Enum):
    """Closed set of failure causes reported by the mail sender."""

    CONFIGURATION = 'configuration'
    ADDRESS_SYNTAX = 'address_syntax'
    ENCODING = 'encoding'
    TRANSPORT = 'transport'


class MailError(RuntimeError):
    """
    Raised when configuring the sender or sending a message fails.

    The original exception, if any, is available as ``__cause__``.
    """

    def __init__(self, kind: MailErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    def __str__(self) -> str:
        return f"[{self.kind.value}] {super().__str__()}"


class IllegalMailFormat(MailError):
    """Raised when a sender address cannot be used to infer an SMTP host."""

    def __init__(self, address: str):
        super().__init__(
            MailErrorKind.CONFIGURATION,
            f"Illegal sender address format: '{address}'"
        )
        self.address = address


def validate_sender_address(address: str) -> bool:
    """
    Validate a sender address against the host-inference pattern.

    Args:
        address: Sender email address to validate

    Returns:
        bool: True if the address matches the pattern, False otherwise
    """
    if not address or not isinstance(address, str):
        return False

    return bool(SENDER_ADDRESS_REGEX.match(address))


def infer_smtp_host(address: str) -> str:
    """
    Derive an SMTP host name from a sender address.

    The host is ``smtp.`` followed by the domain part of the address, which
    works for most public mail providers.

    Args:
        address: Sender email address

    Returns:
        str: Inferred SMTP host name

    Raises:
        IllegalMailFormat: If the address does not match the sender pattern
    """
    if not validate_sender_address(address):
        raise IllegalMailFormat(address)

    return 'smtp.' + address.split('@', 1)[1]


def parse_address(value: str) -> Tuple[str, str]:
    """
    Parse a recipient string into a (display name, addr-spec) pair.

    Accepts bare addresses (``user@example.com``) and named addresses
    (``User <user@example.com>``).

    Args:
        value: Recipient string to parse

    Returns:
        Tuple[str, str]: Display name (possibly empty) and address

    Raises:
        MailError: ADDRESS_SYNTAX if the string is not a single valid address
    """
    if not isinstance(value, str) or not value.strip():
        raise MailError(MailErrorKind.ADDRESS_SYNTAX, f"Empty or non-string address: {value!r}")

    addresses = getaddresses([value.strip()])
    if len(addresses) != 1:
        raise MailError(MailErrorKind.ADDRESS_SYNTAX, f"Expected exactly one address: '{value}'")

    display_name, addr_spec = addresses[0]
    if not addr_spec or not ADDR_SPEC_REGEX.match(addr_spec):
        raise MailError(MailErrorKind.ADDRESS_SYNTAX, f"Illegal address: '{value}'")

    return display_name, addr_spec


def sanitize_email(email: Optional[str]) -> str:
    """
    Sanitize email address for logging (hide most of the local part).

    Args:
        email: Email address to sanitize

    Returns:
        str: Sanitized email address
    """
    if not email:
        return "None"

    if '@' in email:
        local, domain = email.split('@', 1)
        if len(local) > 2:
            sanitized_local = local[:2] + '*' * (len(local) - 2)
        else:
            sanitized_local = '*' * len(local)
        return f"{sanitized_local}@{domain}"

    if len(email) > 4:
        return email[:2] + '*' * (len(email) - 4) + email[-2:]
    return '*' * len(email)


def format_body(body: Optional[str]) -> str:
    """Replace every newline in the HTML body with a line-break tag."""
    if body is None:
        return ''
    return body.replace('\n', LINE_BREAK_TAG)


def encode_word(text: str, charset: str = DEFAULT_CHARSET) -> str:
    """
    Encode header text as an RFC 2047 encoded word when it is not plain ASCII.

    Args:
        text: Header text, e.g. an attachment file name
        charset: Charset to encode non-ASCII text with

    Returns:
        str: The text unchanged if ASCII, otherwise its encoded-word form on
        a single line

    Raises:
        UnicodeError: If the text cannot be represented in the charset
        LookupError: If the charset is unknown
    """
    try:
        text.encode('ascii')
        return text
    except UnicodeEncodeError:
        # maxlinelen=0 disables folding so the result is safe inside a parameter
        return Header(text, charset).encode(maxlinelen=0)


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging for programs embedding the sender.

    Args:
        level: Log level name; defaults to the LOG_LEVEL environment variable,
            then INFO
    """
    log_level = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()

    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL
    }

    logging.basicConfig(
        level=level_map.get(log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    logger.info(f"Logging configured at {log_level} level")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('true', '1', 'yes', 'on')


@dataclass(frozen=True)
class SenderConfig:
    """
    Transport configuration for a mail sender.

    Defaults follow a plain SMTP submission: port 25, authentication enabled,
    no STARTTLS, no implicit TLS and no socket timeout (the OS default applies).
    """

    host: str
    sender_address: str
    secret: str = field(repr=False)
    port: int = DEFAULT_SMTP_PORT
    auth: bool = True
    use_tls: bool = False
    use_ssl: bool = False
    timeout: Optional[float] = None
    charset: str = DEFAULT_CHARSET

    @classmethod
    def from_env(cls) -> 'SenderConfig':
        """
        Load sender configuration from environment variables.

        Required environment variables:
        - MAIL_SENDER_ADDRESS: Sender address, also used as login user
        - MAIL_SECRET: Login password

        Optional environment variables:
        - MAIL_SMTP_HOST: SMTP host (default: inferred from the sender address)
        - MAIL_SMTP_PORT: SMTP port (default: 25)
        - MAIL_SMTP_AUTH: Authenticate before sending (default: true)
        - MAIL_USE_TLS: Use STARTTLS (default: false)
        - MAIL_USE_SSL: Use SSL/TLS (default: false)
        - MAIL_TIMEOUT: Socket timeout in seconds (default: none)
        - MAIL_CHARSET: Body and filename charset (default: utf-8)

        Returns:
            SenderConfig: Loaded configuration

        Raises:
            MailError: CONFIGURATION if required values are missing or invalid
        """
        required_vars = ['MAIL_SENDER_ADDRESS', 'MAIL_SECRET']
        missing_vars = [var for var in required_vars if not os.getenv(var)]
        if missing_vars:
            raise MailError(
                MailErrorKind.CONFIGURATION,
                f"Missing required mail configuration environment variables: {', '.join(missing_vars)}"
            )

        sender_address = os.getenv('MAIL_SENDER_ADDRESS').strip()
        host = os.getenv('MAIL_SMTP_HOST', '').strip() or infer_smtp_host(sender_address)

        try:
            port = int(os.getenv('MAIL_SMTP_PORT', str(DEFAULT_SMTP_PORT)))
        except ValueError as e:
            raise MailError(
                MailErrorKind.CONFIGURATION,
                f"Invalid MAIL_SMTP_PORT value: '{os.getenv('MAIL_SMTP_PORT')}'. "
                "MAIL_SMTP_PORT must be a valid integer (e.g., 25, 465, 587)"
            ) from e

        timeout = None
        raw_timeout = os.getenv('MAIL_TIMEOUT')
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError as e:
                raise MailError(
                    MailErrorKind.CONFIGURATION,
                    f"Invalid MAIL_TIMEOUT value: '{raw_timeout}'. "
                    "MAIL_TIMEOUT must be a number of seconds"
                ) from e

        return cls(
            host=host,
            sender_address=sender_address,
            secret=os.getenv('MAIL_SECRET'),
            port=port,
            auth=_env_flag('MAIL_SMTP_AUTH', 'true'),
            use_tls=_env_flag('MAIL_USE_TLS', 'false'),
            use_ssl=_env_flag('MAIL_USE_SSL', 'false'),
            timeout=timeout,
            charset=os.getenv('MAIL_CHARSET', DEFAULT_CHARSET)
        )

    def validate(self) -> None:
        """
        Validate configuration parameters.

        Raises:
            MailError: CONFIGURATION if a parameter is invalid
        """
        if not self.host or not self.host.strip():
            raise MailError(MailErrorKind.CONFIGURATION, "SMTP host cannot be empty")

        if not (1 <= self.port <= 65535):
            raise MailError(
                MailErrorKind.CONFIGURATION,
                f"SMTP port must be between 1 and 65535, got: {self.port}"
            )

        if self.timeout is not None and self.timeout <= 0:
            raise MailError(
                MailErrorKind.CONFIGURATION,
                f"SMTP timeout must be positive, got: {self.timeout}"
            )

        if self.use_tls and self.use_ssl:
            raise MailError(
                MailErrorKind.CONFIGURATION,
                "Cannot use both TLS and SSL simultaneously. Choose either STARTTLS (use_tls=True) or SSL/TLS (use_ssl=True)"
            )

        if self.use_ssl and self.port != 465:
            logger.warning(f"SSL is enabled but port {self.port} is not the common SSL port (465)")

        if self.use_tls and self.port not in [587, 25]:
            logger.warning(f"STARTTLS is enabled but port {self.port} is not a common STARTTLS port (587, 25)")

        logger.debug(f"Mail configuration validated for {self.host}:{self.port}")


@dataclass(frozen=True)
class PasswordAuthentication:
    """User name and password handed to the SMTP login."""

    user_name: str
    password: str = field(repr=False)


class MailAuthenticator:
    """Supplies login credentials to the mail session."""

    def __init__(self, sender_address: str, secret: str):
        self._sender_address = sender_address
        self._secret = secret

    @property
    def sender_address(self) -> str:
        return self._sender_address

    def get_password_authentication(self) -> PasswordAuthentication:
        """Called by the session right before logging in."""
        return PasswordAuthentication(self._sender_address, self._secret)

    def __repr__(self) -> str:
        return f"MailAuthenticator(sender_address={self._sender_address!r})"


class MailSession:
    """
    Transport session bound to one configuration and authenticator.

    Creating a session performs no network I/O. Each call to send() opens a
    connection, authenticates, submits the message and closes the connection.
    Sessions may be reused for sequential sends but are not synchronized for
    concurrent use.
    """

    def __init__(self, config: SenderConfig, authenticator: MailAuthenticator):
        self.config = config
        self.authenticator = authenticator

        logger.debug(f"Mail session created for {config.host}:{config.port} (auth={config.auth})")

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def auth_enabled(self) -> bool:
        return self.config.auth

    def _connect(self) -> smtplib.SMTP:
        timeout_kwargs = {}
        if self.config.timeout is not None:
            timeout_kwargs['timeout'] = self.config.timeout

        if self.config.use_ssl:
            logger.debug("Establishing SSL/TLS connection")
            return smtplib.SMTP_SSL(
                host=self.config.host,
                port=self.config.port,
                context=ssl.create_default_context(),
                **timeout_kwargs
            )

        logger.debug("Establishing plain SMTP connection")
        connection = smtplib.SMTP(host=self.config.host, port=self.config.port, **timeout_kwargs)
        if self.config.use_tls:
            logger.debug("Upgrading connection with STARTTLS")
            try:
                connection.starttls(context=ssl.create_default_context())
            except (smtplib.SMTPException, OSError):
                self._close(connection)
                raise
        return connection

    def send(self, message: MIMEMultipart, from_addr: str, to_addrs: List[str]) -> None:
        """
        Submit a fully built message to the SMTP server.

        Args:
            message: Prepared MIME message
            from_addr: Envelope sender
            to_addrs: Envelope recipients

        Raises:
            MailError: TRANSPORT if connecting, authenticating or sending fails
        """
        connection = None
        try:
            connection = self._connect()

            if logger.isEnabledFor(logging.DEBUG):
                connection.set_debuglevel(1)

            if self.auth_enabled:
                credentials = self.authenticator.get_password_authentication()
                logger.debug(f"Authenticating as {sanitize_email(credentials.user_name)}")
                connection.login(credentials.user_name, credentials.password)

            refused_recipients = connection.send_message(message, from_addr=from_addr, to_addrs=to_addrs)

        except smtplib.SMTPAuthenticationError as e:
            raise MailError(
                MailErrorKind.TRANSPORT,
                f"SMTP authentication failed for {sanitize_email(from_addr)}: {e}"
            ) from e

        except smtplib.SMTPRecipientsRefused as e:
            raise MailError(
                MailErrorKind.TRANSPORT,
                f"All recipients were refused by SMTP server: {list(e.recipients)}"
            ) from e

        except smtplib.SMTPSenderRefused as e:
            raise MailError(
                MailErrorKind.TRANSPORT,
                f"Sender address was refused by SMTP server: {e.sender} - {e.smtp_error}"
            ) from e

        except (smtplib.SMTPException, OSError) as e:
            raise MailError(
                MailErrorKind.TRANSPORT,
                f"SMTP error talking to {self.config.host}:{self.config.port}: {e}"
            ) from e

        finally:
            if connection is not None:
                self._close(connection)

        if refused_recipients:
            raise MailError(
                MailErrorKind.TRANSPORT,
                f"SMTP server refused recipients: {list(refused_recipients.keys())}"
            )

    @staticmethod
    def _close(connection: smtplib.SMTP) -> None:
        try:
            connection.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Error during SMTP disconnect: {e}")
            connection.close()


@dataclass
class SimpleMail:
    """
    One outgoing email.

    ``recipients`` overrides the sender's default recipients when non-empty.
    ``attachments`` holds paths of files to attach. The sender only reads
    these fields.
    """

    subject: Optional[str] = None
    body: Optional[str] = None
    recipients: Optional[List[str]] = None
    attachments: Optional[List[PathLike]] = None


class SimpleMailSender:
    """
    Sends SimpleMail messages through one configured SMTP server.

    Recipients are resolved in this order, first non-empty wins: the message's
    own recipients, the sender's default recipients, the sender address itself.
    """

    def __init__(
        self,
        config: Optional[SenderConfig] = None,
        default_recipients: Optional[Sequence[str]] = None
    ):
        """
        Initialize the sender.

        Args:
            config: Transport configuration; None leaves the sender unconfigured
                until configure() is called
            default_recipients: Recipients used when a message names none

        Raises:
            MailError: CONFIGURATION if the configuration is invalid
        """
        self._config: Optional[SenderConfig] = None
        self._authenticator: Optional[MailAuthenticator] = None
        self._session: Optional[MailSession] = None
        self.default_recipients = default_recipients

        if config is not None:
            self.configure(config)

    @classmethod
    def for_host(
        cls,
        host: str,
        sender_address: str,
        secret: str,
        default_recipients: Optional[Sequence[str]] = None,
        **options
    ) -> 'SimpleMailSender':
        """
        Create a sender for an explicit SMTP host.

        The sender address is not format-checked. Extra keyword arguments are
        passed to SenderConfig (port, use_tls, timeout, ...).
        """
        config = SenderConfig(host=host, sender_address=sender_address, secret=secret, **options)
        return cls(config, default_recipients)

    @classmethod
    def from_address(
        cls,
        sender_address: str,
        secret: str,
        default_recipients: Optional[Sequence[str]] = None,
        **options
    ) -> 'SimpleMailSender':
        """
        Create a sender whose SMTP host is inferred from the sender address.

        Args:
            sender_address: Sender address, e.g. ``user@example.com`` gives
                host ``smtp.example.com``
            secret: Login password
            default_recipients: Recipients used when a message names none
            **options: Extra SenderConfig fields

        Returns:
            SimpleMailSender: Configured sender

        Raises:
            IllegalMailFormat: If the sender address does not match the
                sender pattern; nothing is initialized in that case
        """
        host = infer_smtp_host(sender_address)
        return cls.for_host(host, sender_address, secret, default_recipients, **options)

    @classmethod
    def from_env(cls, default_recipients: Optional[Sequence[str]] = None) -> 'SimpleMailSender':
        """Create a sender from SenderConfig.from_env()."""
        return cls(SenderConfig.from_env(), default_recipients)

    def configure(self, config: SenderConfig) -> None:
        """
        Apply a configuration, replacing the authenticator and session.

        Raises:
            MailError: CONFIGURATION if the configuration is invalid
        """
        config.validate()

        self._config = config
        self._authenticator = MailAuthenticator(config.sender_address, config.secret)
        self._session = MailSession(config, self._authenticator)

        logger.info(
            f"Mail sender initialized for {config.host}:{config.port} "
            f"as {sanitize_email(config.sender_address)}"
        )

    @property
    def config(self) -> Optional[SenderConfig]:
        return self._config

    @property
    def authenticator(self) -> Optional[MailAuthenticator]:
        return self._authenticator

    @property
    def session(self) -> Optional[MailSession]:
        return self._session

    @property
    def is_configured(self) -> bool:
        return self._session is not None

    @property
    def default_recipients(self) -> Optional[List[str]]:
        return self._default_recipients

    @default_recipients.setter
    def default_recipients(self, recipients: Optional[Sequence[str]]) -> None:
        if isinstance(recipients, str):
            raise TypeError("default_recipients must be a sequence of addresses, not a string")
        self._default_recipients = list(recipients) if recipients is not None else None

    def _require_configured(self) -> None:
        if not self.is_configured:
            raise MailError(
                MailErrorKind.CONFIGURATION,
                "Mail sender is not configured. Pass a SenderConfig or call configure() first."
            )

    def resolve_recipients(self, mail: SimpleMail) -> List[str]:
        """
        Pick the recipients for a message.

        Args:
            mail: Message to resolve recipients for

        Returns:
            List[str]: The message recipients if any, else the default
            recipients if any, else the sender address
        """
        if mail.recipients:
            return list(mail.recipients)
        if self._default_recipients:
            return list(self._default_recipients)

        self._require_configured()
        return [self._authenticator.sender_address]

    def build_message(self, mail: SimpleMail) -> MIMEMultipart:
        """
        Build the MIME message for a SimpleMail.

        All recipients are parsed before anything else is built, so a
        malformed address aborts early.

        Args:
            mail: Message to build

        Returns:
            MIMEMultipart: multipart/mixed message with one HTML part followed
            by one part per attachment

        Raises:
            MailError: ADDRESS_SYNTAX for malformed recipients
            UnicodeError, LookupError: If a filename cannot be encoded
            OSError: If an attachment cannot be read
        """
        message, _ = self._prepare(mail)
        return message

    def _prepare(self, mail: SimpleMail) -> Tuple[MIMEMultipart, List[str]]:
        self._require_configured()
        config = self._config

        addresses = [parse_address(recipient) for recipient in self.resolve_recipients(mail)]
        logger.debug(f"Building email message for {len(addresses)} recipients")

        message = MIMEMultipart()
        message['From'] = formataddr(('', self._authenticator.sender_address))
        message['To'] = ', '.join(formataddr(address, charset=config.charset) for address in addresses)
        if mail.subject is not None:
            message['Subject'] = encode_word(mail.subject, config.charset)
        message['Date'] = formatdate(localtime=True)
        message['Message-ID'] = f"<{uuid.uuid4()}@{config.host}>"
        message['X-Mailer'] = X_MAILER

        message.attach(MIMEText(format_body(mail.body), 'html', config.charset))

        for path in mail.attachments or []:
            message.attach(self._build_attachment(path, config.charset))

        logger.debug(f"Email message built with {len(message.get_payload())} parts")
        return message, [addr_spec for _, addr_spec in addresses]

    @staticmethod
    def _build_attachment(path: PathLike, charset: str) -> MIMEBase:
        filename = os.path.basename(os.fspath(path))

        with open(path, 'rb') as f:
            content = f.read()

        mime_type, _ = mimetypes.guess_type(filename)
        if not mime_type:
            mime_type = 'application/octet-stream'
        main_type, sub_type = mime_type.split('/', 1)

        encoded_name = encode_word(filename, charset)
        part = MIMEBase(main_type, sub_type, name=encoded_name)
        part.set_payload(content)
        encoders.encode_base64(part)
        if encoded_name == filename:
            part.add_header('Content-Disposition', 'attachment', filename=filename)
        else:
            # RFC 2231 form for the disposition; Content-Type keeps the encoded word
            part.add_header('Content-Disposition', 'attachment', filename=(charset, '', filename))

        logger.debug(f"Added attachment: {filename} ({mime_type}, {len(content)} bytes)")
        return part

    def send(self, mail: SimpleMail) -> str:
        """
        Build and send a message. Blocks until the server accepts or rejects it.

        Args:
            mail: Message to send

        Returns:
            str: Message-ID of the sent message

        Raises:
            MailError: CONFIGURATION if the sender is unconfigured,
                ADDRESS_SYNTAX for malformed recipients, ENCODING if an
                attachment name cannot be encoded, TRANSPORT if an attachment
                cannot be read or the SMTP exchange fails
        """
        try:
            self._require_configured()
        except MailError as e:
            logger.error(f"Failed to send email: {e}")
            raise

        try:
            message, recipients = self._prepare(mail)
        except MailError as e:
            logger.error(f"Failed to build email message: {e}")
            raise
        except (UnicodeError, LookupError) as e:
            logger.error(f"Failed to encode email message: {e}")
            raise MailError(MailErrorKind.ENCODING, f"Failed to encode email message: {e}") from e
        except OSError as e:
            logger.error(f"Failed to read attachment: {e}")
            raise MailError(MailErrorKind.TRANSPORT, f"Failed to read attachment: {e}") from e

        try:
            self._session.send(message, self._authenticator.sender_address, recipients)
        except MailError as e:
            logger.error(f"Failed to send email: {e}")
            raise

        message_id = message['Message-ID']
        logger.info(
            f"Email sent successfully to {len(recipients)} recipients "
            f"from {sanitize_email(self._authenticator.sender_address)}. Message ID: {message_id}"
        )
        return message_id
