"""Message decoder - provider message object to (content, type, media_url).

Inbound data is untrusted and often partial, so decode() never raises:
any shape it does not recognize becomes a text placeholder.

Precedence mirrors the provider's own:
conversation > extendedTextMessage > image > video > document > audio.
"""

from __future__ import annotations

from typing import Any, Callable

from .models import DecodedMessage, MessageKind, MessageType

FALLBACK_CONTENT = "Mensagem de mídia"

PLACEHOLDERS: dict[MessageKind, str] = {
    MessageKind.IMAGE: "Imagem",
    MessageKind.VIDEO: "Vídeo",
    MessageKind.DOCUMENT: "Documento",
    MessageKind.AUDIO: "Áudio",
}

KIND_TO_TYPE: dict[MessageKind, MessageType] = {
    MessageKind.CONVERSATION: "text",
    MessageKind.EXTENDED_TEXT: "text",
    MessageKind.IMAGE: "image",
    MessageKind.VIDEO: "video",
    MessageKind.DOCUMENT: "document",
    MessageKind.AUDIO: "audio",
    MessageKind.UNKNOWN: "text",
}

# Containers Evolution uses to wrap the real message
_WRAPPERS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "documentWithCaptionMessage",
)

DOCUMENT_EXTENSIONS: dict[str, str] = {
    "application/pdf": "pdf",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/vnd.ms-powerpoint": "ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "text/csv": "csv",
    "text/plain": "txt",
    "application/zip": "zip",
    "application/x-rar-compressed": "rar",
    "application/vnd.rar": "rar",
}

IMAGE_EXTENSIONS: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}

VIDEO_EXTENSIONS: dict[str, str] = {
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "video/3gp": "3gp",
    "video/quicktime": "mov",
    "video/x-msvideo": "avi",
    "video/x-matroska": "mkv",
    "video/webm": "webm",
}

AUDIO_EXTENSIONS: dict[str, str] = {
    "audio/ogg": "ogg",
    "audio/opus": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/aac": "aac",
    "audio/amr": "amr",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mp4": "m4a",
    "audio/x-m4a": "m4a",
}

EXTENSIONS_BY_TYPE: dict[str, dict[str, str]] = {
    "document": DOCUMENT_EXTENSIONS,
    "image": IMAGE_EXTENSIONS,
    "video": VIDEO_EXTENSIONS,
    "audio": AUDIO_EXTENSIONS,
}

DEFAULT_EXTENSIONS: dict[str, str] = {
    "image": "jpg",
    "video": "mp4",
    "audio": "ogg",
    "document": "bin",
}

FILE_BASENAMES: dict[str, str] = {
    "image": "imagem",
    "video": "video",
    "audio": "audio",
    "document": "documento",
}


def _text(value: Any) -> str | None:
    # Postgres text columns reject NUL
    if isinstance(value, str):
        value = value.replace("\x00", "")
        if value.strip():
            return value
    return None



def _section(message: dict[str, Any], kind: MessageKind) -> dict[str, Any] | None:
    value = message.get(kind.value)
    return value if isinstance(value, dict) else None


def _unwrap(message: Any) -> dict[str, Any]:
    if not isinstance(message, dict):
        return {}
    for _ in range(3):
        for wrapper in _WRAPPERS:
            inner = message.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                message = inner["message"]
                break
        else:
            break
    return message


def _match_conversation(message: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
    text = _text(message.get(MessageKind.CONVERSATION.value))
    return (text, {}) if text else None


def _match_extended_text(message: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
    section = _section(message, MessageKind.EXTENDED_TEXT)
    text = _text(section.get("text")) if section else None
    return (text, section) if text else None


def _media_matcher(kind: MessageKind) -> Callable[[dict[str, Any]], tuple[str, dict[str, Any]] | None]:
    def match(message: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
        section = _section(message, kind)
        if section is None:
            return None
        content = _text(section.get("caption"))
        if content is None and kind is MessageKind.DOCUMENT:
            content = _text(section.get("fileName")) or _text(section.get("title"))
        return (content or PLACEHOLDERS[kind], section)

    return match


# Single ordered match over the closed set of kinds
_MATCHERS: tuple[tuple[MessageKind, Callable[[dict[str, Any]], tuple[str, dict[str, Any]] | None]], ...] = (
    (MessageKind.CONVERSATION, _match_conversation),
    (MessageKind.EXTENDED_TEXT, _match_extended_text),
    (MessageKind.IMAGE, _media_matcher(MessageKind.IMAGE)),
    (MessageKind.VIDEO, _media_matcher(MessageKind.VIDEO)),
    (MessageKind.DOCUMENT, _media_matcher(MessageKind.DOCUMENT)),
    (MessageKind.AUDIO, _media_matcher(MessageKind.AUDIO)),
)


def decode(raw_message: Any) -> DecodedMessage:
    """Decode a provider message object. Never raises.

    Args:
        raw_message: data.message from the webhook (any shape, possibly None).

    Returns:
        DecodedMessage with non-empty content. Media kinds carry the
        provider URL when present; unknown shapes fall back to a text
        placeholder.
    """
    message = _unwrap(raw_message)

    for kind, matcher in _MATCHERS:
        matched = matcher(message)
        if matched is None:
            continue
        content, section = matched
        message_type = KIND_TO_TYPE[kind]
        if message_type == "text":
            return DecodedMessage(content=content, type="text", media_url=None, kind=kind)
        return DecodedMessage(
            content=content,
            type=message_type,
            media_url=_text(section.get("url")),
            kind=kind,
            mime_type=_text(section.get("mimetype")),
            file_name=_text(section.get("fileName")) or _text(section.get("title")),
        )

    return DecodedMessage(
        content=FALLBACK_CONTENT,
        type="text",
        media_url=None,
        kind=MessageKind.UNKNOWN,
    )


def extension_for(message_type: str, mime_type: str | None) -> str:
    """Look up a file extension for a MIME type within a message type.

    Parameters after ';' (e.g. "audio/ogg; codecs=opus") are ignored.
    """
    table = EXTENSIONS_BY_TYPE.get(message_type, {})
    if mime_type:
        base = mime_type.split(";", 1)[0].strip().lower()
        if base in table:
            return table[base]
    return DEFAULT_EXTENSIONS.get(message_type, "bin")


def file_name_for(
    message_type: str,
    message_id: str,
    *,
    file_name: str | None = None,
    mime_type: str | None = None,
) -> str | None:
    """Display/download filename for a media message.

    Explicit filename with an extension wins; otherwise the extension
    comes from the MIME table, then the type default. Text messages
    have no filename.
    """
    if message_type not in FILE_BASENAMES:
        return None

    if file_name and "." in file_name.strip(".") and message_type == "document":
        return file_name

    base = file_name if (file_name and message_type == "document") else None
    base = base or f"{FILE_BASENAMES[message_type]}_{message_id}"
    return f"{base}.{extension_for(message_type, mime_type)}"
