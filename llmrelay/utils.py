import base64
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence, Tuple, Union

import httpx

from .types import (
    ContentPart, ImagePart, NormalizedMessage, TextPart, ToolCallPart,
    ToolResultPart, ToolSpec,
)

# =============================================================================
# Image Helpers
# =============================================================================

_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}


def encode_image_file(image_path: Union[str, Path]) -> Tuple[str, str]:
    """
    Encode a local image file to base64.

    Args:
        image_path (Union[str, Path]): Path to the image file.

    Returns:
        Tuple[str, str]: (b64_data, mime_type), mime type guessed from the extension.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {image_path}")

    mime_type = _MIME_TYPES.get(path.suffix.lower(), "image/jpeg")
    with open(path, "rb") as f:
        b64_data = base64.b64encode(f.read()).decode("utf-8")

    return b64_data, mime_type


async def encode_image_url(url: str, *, timeout: float = 30.0) -> Tuple[str, str]:
    """
    Fetch an image from a URL and encode it to base64.

    Args:
        url (str): Publicly accessible image URL.
        timeout (float): Download timeout in seconds.

    Returns:
        Tuple[str, str]: (b64_data, mime_type) taken from the Content-Type header.

    Raises:
        httpx.HTTPError: If the download fails (timeout, 404, etc.).
    """
    # Some hosts refuse requests without a browser-like User-Agent
    headers = {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    }

    async with httpx.AsyncClient(timeout=timeout, headers=headers, follow_redirects=True) as http_client:
        response = await http_client.get(url)
        response.raise_for_status()

        content_type = response.headers.get("content-type", "image/jpeg")
        mime_type = content_type.split(";")[0].strip()
        b64_data = base64.b64encode(response.content).decode("utf-8")

    return b64_data, mime_type


def parse_data_uri(url: str) -> Tuple[str, str]:
    """
    Split a data URI into (base64_data, mime_type).

    Raises:
        ValueError: If `url` is not a data URI.
    """
    if not url.startswith("data:") or "," not in url:
        raise ValueError(f"Not a data URI: {url[:40]}...")
    header, data = url.split(",", 1)
    mime_type = header.split(":", 1)[1].split(";")[0] or "image/jpeg"
    return data, mime_type


async def inline_remote_images(
    messages: Sequence[NormalizedMessage],
) -> Tuple[NormalizedMessage, ...]:
    """
    Replace http(s) image parts with data URIs.

    Used before `build_request` for providers that cannot fetch URLs. Messages
    without remote images are returned as the same objects.
    """
    cache: Dict[str, str] = {}
    resolved: List[NormalizedMessage] = []
    for msg in messages:
        if not any(not img.is_inline for img in msg.images):
            resolved.append(msg)
            continue
        parts: List[ContentPart] = []
        for part in msg.content:
            if isinstance(part, ImagePart) and not part.is_inline:
                if part.url not in cache:
                    b64_data, mime_type = await encode_image_url(part.url)
                    cache[part.url] = f"data:{mime_type};base64,{b64_data}"
                parts.append(ImagePart(url=cache[part.url], detail=part.detail))
            else:
                parts.append(part)
        resolved.append(
            NormalizedMessage(role=msg.role, content=tuple(parts), name=msg.name, incomplete=msg.incomplete)
        )
    return tuple(resolved)


def create_image_content(
    source: str,
    *,
    mime_type: Optional[str] = None,
    detail: Optional[Literal["auto", "low", "high"]] = None,
) -> ImagePart:
    """
    Create an image content part.

    Args:
        source (str): Can be:
            - A local file path (e.g., "/path/to/image.png")
            - A remote URL (e.g., "https://example.com/image.jpg")
            - A data URI (e.g., "data:image/png;base64,...")
            - Raw base64 data (requires `mime_type`)
        mime_type (str, optional): Required if `source` is raw base64 data.
        detail (str, optional): Detail level for OpenAI vision ('auto', 'low', 'high').

    Raises:
        ValueError: If the source type cannot be determined.
    """
    if source.startswith("data:") or source.startswith(("http://", "https://")):
        url = source
    elif mime_type:
        url = f"data:{mime_type};base64,{source}"
    elif len(source) < 260 and Path(source).exists():
        b64_data, detected_mime = encode_image_file(source)
        url = f"data:{detected_mime};base64,{b64_data}"
    else:
        raise ValueError(
            f"Cannot determine image source type for: {source[:50]}... "
            "Provide mime_type for raw base64 data."
        )
    return ImagePart(url=url, detail=detail)


# =============================================================================
# Message Helpers
# =============================================================================

def create_message(
    role: Literal["system", "user", "assistant"],
    content: Union[str, Iterable[Union[str, ContentPart]]],
    *,
    name: Optional[str] = None,
) -> NormalizedMessage:
    """
    Create a NormalizedMessage, turning bare strings into TextParts.

    Example:
        create_message("user", ["Look at this", create_image_content("https://...")])
    """
    if isinstance(content, str):
        return NormalizedMessage(role=role, content=(TextPart(content),), name=name)

    parts: List[ContentPart] = []
    for item in content:
        parts.append(TextPart(item) if isinstance(item, str) else item)
    return NormalizedMessage(role=role, content=tuple(parts), name=name)


def create_tool(
    name: str,
    description: str,
    parameters: Dict[str, Any],
    required: Optional[List[str]] = None,
) -> ToolSpec:
    """
    Create a ToolSpec from a properties mapping.

    Args:
        name (str): Tool name.
        description (str): What the tool does.
        parameters (Dict): JSON Schema `properties` of the arguments object.
        required (List[str], optional): Required argument names.
    """
    return ToolSpec(
        name=name,
        description=description,
        parameter_schema={
            "type": "object",
            "properties": parameters,
            "required": required or [],
        },
    )


def create_tool_result(
    call_id: str,
    content: str,
    *,
    name: Optional[str] = None,
    is_error: bool = False,
) -> NormalizedMessage:
    """
    Create a tool message carrying the result of one tool call.
    """
    return NormalizedMessage(
        role="tool",
        content=(ToolResultPart(call_id=call_id, content=content, name=name, is_error=is_error),),
    )


def create_assistant_message_with_tool_calls(
    content: str,
    tool_calls: Sequence[ToolCallPart],
) -> NormalizedMessage:
    """
    Create an assistant message that requests one or more tool calls.
    """
    parts: List[ContentPart] = [TextPart(content)] if content else []
    parts.extend(tool_calls)
    return NormalizedMessage(role="assistant", content=tuple(parts))
