"""Wire format for kernel messages.

A message travels as a list of byte frames:

    [ident, ..., b"<IDS|MSG>", signature, header, parent_header, metadata, content]

The identity frames in front of the delimiter are the routing envelope added by
ROUTER sockets. The signature is the hex encoded HMAC of the four JSON frames
that follow it, or empty when no key is configured.

Everything here is pure: no sockets and no state beyond the arguments.
"""
import hashlib
import hmac
import json
import typing as t

from pydantic import BaseModel, ValidationError

from zasper_kernel.models.message.messageModel import Header, Message
from zasper_kernel.utils import isoformat, new_id, utcnow

DELIM = b"<IDS|MSG>"

# names of the four signed frames, in wire order
PAYLOAD_FRAMES = ("header", "parent_header", "metadata", "content")


class InvalidSignature(Exception):
    """A message had a signature that does not match its contents."""


class MalformedPayload(Exception):
    """A message could not be split or parsed into its expected structure."""

    def __init__(self, msg: str, frame: t.Optional[str] = None):
        super().__init__(msg)
        self.frame = frame


def digest_name(signature_scheme: str) -> str:
    """Return the hashlib name for a signature scheme like 'hmac-sha256'."""
    scheme, _, hash_name = signature_scheme.partition("-")
    msg = f"Unsupported signature scheme: {signature_scheme!r}"
    if scheme != "hmac" or hash_name not in hashlib.algorithms_available:
        raise ValueError(msg)
    # variable length digests (shake_*) have no fixed-size hexdigest
    if not hmac.new(b"", digestmod=hash_name).digest_size:
        raise ValueError(msg)
    return hash_name


def _mac(parts: t.Sequence[bytes], key: bytes, signature_scheme: str) -> hmac.HMAC:
    mac = hmac.new(key, digestmod=digest_name(signature_scheme))
    for part in parts:
        mac.update(part)
    return mac


def sign(parts: t.Sequence[bytes], key: bytes, signature_scheme: str = "hmac-sha256") -> bytes:
    """Sign the four payload frames, returning the hex digest as bytes.

    Returns an empty signature when no key is configured.
    """
    if not key:
        return b""
    return _mac(parts, key, signature_scheme).hexdigest().encode("ascii")


def json_packer(obj: t.Any) -> bytes:
    return json.dumps(obj, ensure_ascii=False).encode("utf8")


def json_unpacker(data: bytes) -> t.Any:
    return json.loads(data)


def encode_message(
    msg: Message, key: bytes = b"", signature_scheme: str = "hmac-sha256"
) -> t.List[bytes]:
    """Serialize a Message into [signature, header, parent_header, metadata, content].

    The identity frames and the delimiter are not added here, see serialize_frames.
    """
    parent = msg.parent_header.model_dump() if msg.parent_header is not None else {}
    parts = [
        json_packer(msg.header.model_dump()),
        json_packer(parent),
        json_packer(msg.metadata or {}),
        json_packer(msg.content),
    ]
    return [sign(parts, key, signature_scheme), *parts]


def decode_message(
    frames: t.Sequence[bytes], key: bytes = b"", signature_scheme: str = "hmac-sha256"
) -> t.Tuple[Message, t.List[bytes]]:
    """Split a multipart message into a Message and its identity envelope.

    Raises
    ------
    InvalidSignature
        A key is configured and the signature frame does not match.
    MalformedPayload
        The delimiter is missing, frames are missing, or one of the four
        payload frames does not parse.
    """
    frames = [bytes(f) for f in frames]
    try:
        idx = frames.index(DELIM)
    except ValueError:
        raise MalformedPayload("Message has no <IDS|MSG> delimiter") from None
    envelope = frames[:idx]
    rest = frames[idx + 1 :]
    if len(rest) < 1 + len(PAYLOAD_FRAMES):
        msg = f"Expected at least {1 + len(PAYLOAD_FRAMES)} frames after the delimiter, got {len(rest)}"
        raise MalformedPayload(msg)

    signature = rest[0]
    parts = rest[1 : 1 + len(PAYLOAD_FRAMES)]
    if key:
        try:
            received = bytes.fromhex(signature.decode("ascii"))
        except ValueError:
            raise InvalidSignature("Signature frame is not hex encoded") from None
        if not hmac.compare_digest(_mac(parts, key, signature_scheme).digest(), received):
            raise InvalidSignature("A message had an invalid signature")

    unpacked = {}
    for name, part in zip(PAYLOAD_FRAMES, parts):
        try:
            unpacked[name] = json_unpacker(part)
        except ValueError as e:
            raise MalformedPayload(f"Could not parse {name} frame: {e}", frame=name) from e
        if not isinstance(unpacked[name], dict):
            msg = f"{name} frame must be a JSON object, got {type(unpacked[name]).__name__}"
            raise MalformedPayload(msg, frame=name)

    try:
        message = Message.model_validate(unpacked)
    except ValidationError as e:
        frame = str(e.errors()[0]["loc"][0]) if e.errors() else None
        raise MalformedPayload(f"Invalid message structure: {e}", frame=frame) from e
    return message, envelope


def serialize_frames(
    msg: Message,
    envelope: t.Sequence[bytes] = (),
    key: bytes = b"",
    signature_scheme: str = "hmac-sha256",
) -> t.List[bytes]:
    """Build the complete multipart message: envelope, delimiter, signed frames."""
    return [*envelope, DELIM, *encode_message(msg, key, signature_scheme)]


def msg_header(msg_type: str, username: str = "", session: str = "") -> Header:
    """Create a fresh header with a unique msg_id."""
    return Header(
        msg_id=new_id(),
        username=username,
        session=session,
        msg_type=msg_type,
        date=isoformat(utcnow()),
    )


def new_message(
    msg_type: str,
    parent: Message,
    content: t.Union[BaseModel, t.Dict[str, t.Any], None] = None,
    metadata: t.Optional[t.Dict[str, t.Any]] = None,
) -> Message:
    """Create a message answering `parent`.

    The parent header is the request's header, session and username are
    copied from it and the new message gets its own msg_id.
    """
    if isinstance(content, BaseModel):
        content = content.model_dump()
    header = msg_header(
        msg_type,
        username=parent.header.username,
        session=parent.header.session,
    )
    return Message(
        header=header,
        parent_header=parent.header,
        metadata=metadata or {},
        content=content or {},
    )
