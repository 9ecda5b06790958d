import logging
import re
from dataclasses import dataclass, field
from typing import Protocol, Sequence, Union

from aiogram import Bot
from aiogram.types import InputMediaPhoto, InputMediaVideo

log = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "bmp"}
VIDEO_EXTENSIONS = {"mp4", "mov", "mkv", "webm", "m4v"}
CAPTION_LIMIT = 1024
MEDIA_GROUP_LIMIT = 10

_HTML_TAG = re.compile(r"<[a-z][\s\S]*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")


class MessageSender(Protocol):
    async def send_message(self, destination: str, content: str,
                           media_urls: Sequence[str] = ()) -> bool:
        """Deliver one post. Returns False or raises when delivery did not happen."""
        ...


def media_type(url: str) -> str:
    ext = url.split("?")[0].rsplit(".", 1)[-1].lower()
    return "video" if ext in VIDEO_EXTENSIONS else "photo"


def prepare_caption(content: str, limit: int = CAPTION_LIMIT) -> str:
    if len(content) <= limit:
        return content
    plain = _ANY_TAG.sub("", content)[:limit - 3]
    return f"{plain}..."


def _chat_id(destination: str) -> Union[int, str]:
    try:
        return int(destination)
    except ValueError:
        return destination


class TelegramSender:
    """Posts into Telegram channels through a bot that is admin there."""

    def __init__(self, bot: Bot):
        self.bot = bot

    @classmethod
    def from_token(cls, token: str) -> "TelegramSender":
        return cls(Bot(token=token))

    async def send_message(self, destination: str, content: str,
                           media_urls: Sequence[str] = ()) -> bool:
        chat_id = _chat_id(destination)
        parse_mode = "HTML" if _HTML_TAG.search(content) else None

        if not media_urls:
            await self.bot.send_message(chat_id=chat_id, text=content, parse_mode=parse_mode)
        elif len(media_urls) == 1:
            url = media_urls[0]
            caption = prepare_caption(content)
            if media_type(url) == "video":
                await self.bot.send_video(chat_id=chat_id, video=url, caption=caption, parse_mode=parse_mode)
            else:
                await self.bot.send_photo(chat_id=chat_id, photo=url, caption=caption, parse_mode=parse_mode)
        else:
            caption = prepare_caption(content)
            media = []
            for index, url in enumerate(media_urls[:MEDIA_GROUP_LIMIT]):
                item_cls = InputMediaVideo if media_type(url) == "video" else InputMediaPhoto
                if index == 0:
                    media.append(item_cls(media=url, caption=caption, parse_mode=parse_mode))
                else:
                    media.append(item_cls(media=url))
            await self.bot.send_media_group(chat_id=chat_id, media=media)
        return True

    async def close(self) -> None:
        await self.bot.session.close()


@dataclass
class SentMessage:
    destination: str
    content: str
    media_urls: tuple[str, ...] = ()


@dataclass
class RecordingSender:
    """Keeps messages in memory instead of delivering them.

    Used for dry runs when no bot token is configured, and in tests.
    Destinations listed in ``failing`` raise, as an unreachable chat would.
    """

    sent: list[SentMessage] = field(default_factory=list)
    failing: set[str] = field(default_factory=set)

    async def send_message(self, destination: str, content: str,
                           media_urls: Sequence[str] = ()) -> bool:
        if destination in self.failing:
            raise RuntimeError(f"chat {destination} not reachable")
        self.sent.append(SentMessage(destination, content, tuple(media_urls)))
        log.debug("recorded message for %s", destination)
        return True
