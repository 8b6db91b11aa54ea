from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Mapping, Sequence

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
)

from .errors import ParseError
from .post import Post, PostMetrics, UrlEntity
from .run_log import EventLogger, ensure_logger

_PLATFORM_TIME_FORMAT = "%a %b %d %H:%M:%S %z %Y"


def _coerce_id(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return value


def _require_non_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must be non-empty")
    return value


def _coerce_count(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value >= 0 else None


def _blank_to_none(value: Any) -> Any:
    if not isinstance(value, str) or not value.strip():
        return None
    return value


Identifier = Annotated[str, BeforeValidator(_coerce_id), AfterValidator(_require_non_blank)]
Handle = Annotated[str, BeforeValidator(_coerce_id), AfterValidator(_require_non_blank)]
Text = Annotated[str, AfterValidator(_require_non_blank)]
Count = Annotated[int | None, BeforeValidator(_coerce_count)]
OptionalStr = Annotated[str | None, BeforeValidator(_blank_to_none)]


class _UrlEntityModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: Text
    expanded_url: OptionalStr = None
    display_url: OptionalStr = None


class _CompactAuthor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: Handle
    name: OptionalStr = None
    profile_image: OptionalStr = None


class _CompactMetrics(BaseModel):
    model_config = ConfigDict(extra="ignore")

    likes: Count = None
    retweets: Count = Field(default=None, validation_alias=AliasChoices("retweets", "reposts"))
    replies: Count = None
    quotes: Count = None
    bookmarks: Count = None


class CompactExportItem(BaseModel):
    """Flat export shape produced by browser extensions and command-line exporters."""

    model_config = ConfigDict(extra="ignore")

    id: Identifier
    author: _CompactAuthor
    text: Text
    created_at: OptionalStr = Field(
        default=None, validation_alias=AliasChoices("created_at", "createdAt")
    )
    urls: list[_UrlEntityModel] | None = None
    media: list[Any] | None = None
    metrics: _CompactMetrics | None = None
    raw: dict[str, Any] | None = None

    like_count: Count = Field(default=None, validation_alias="likeCount")
    retweet_count: Count = Field(default=None, validation_alias="retweetCount")
    reply_count: Count = Field(default=None, validation_alias="replyCount")


class _PlatformUserLegacy(BaseModel):
    model_config = ConfigDict(extra="ignore")

    screen_name: Handle
    name: OptionalStr = None
    profile_image_url_https: OptionalStr = None


class _PlatformUserResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    legacy: _PlatformUserLegacy


class _PlatformUserResults(BaseModel):
    model_config = ConfigDict(extra="ignore")

    result: _PlatformUserResult


class _PlatformCore(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_results: _PlatformUserResults


class _PlatformMedia(BaseModel):
    model_config = ConfigDict(extra="ignore")

    media_url_https: Text
    type: OptionalStr = None


class _PlatformEntities(BaseModel):
    model_config = ConfigDict(extra="ignore")

    urls: list[_UrlEntityModel] = Field(default_factory=list)
    media: list[_PlatformMedia] = Field(default_factory=list)


class _PlatformLegacy(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_text: Text
    created_at: OptionalStr = None
    entities: _PlatformEntities | None = None
    favorite_count: Count = None
    retweet_count: Count = None
    reply_count: Count = None
    quote_count: Count = None
    bookmark_count: Count = None


class PlatformApiItem(BaseModel):
    """Nested shape returned by the platform's GraphQL timeline API."""

    model_config = ConfigDict(extra="ignore")

    rest_id: Identifier
    core: _PlatformCore
    legacy: _PlatformLegacy


def parse_timestamp(value: Any) -> str | None:
    """
    Normalize a timestamp to ISO-8601 UTC.

    Accepts ISO-8601 (with "Z" or an offset; naive values are taken as UTC) and
    the platform's "Wed Oct 10 20:19:24 +0000 2018" form. Anything else is None.
    """
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None

    dt: datetime | None
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        try:
            dt = datetime.strptime(s, _PLATFORM_TIME_FORMAT)
        except ValueError:
            return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _entities(models: Sequence[_UrlEntityModel] | None) -> tuple[UrlEntity, ...]:
    return tuple(
        UrlEntity(url=m.url.strip(), expanded_url=m.expanded_url, display_url=m.display_url)
        for m in (models or [])
    )


def _media_urls(values: Sequence[Any]) -> tuple[str, ...]:
    return tuple(v.strip() for v in values if isinstance(v, str) and v.strip())


def _post_from_compact(item: CompactExportItem) -> Post:
    m = item.metrics or _CompactMetrics()
    metrics = PostMetrics(
        replies=m.replies if m.replies is not None else item.reply_count,
        reposts=m.retweets if m.retweets is not None else item.retweet_count,
        likes=m.likes if m.likes is not None else item.like_count,
        quotes=m.quotes,
        bookmarks=m.bookmarks,
    )
    return Post(
        post_id=item.id,
        author_username=item.author.username,
        author_name=item.author.name,
        author_profile_image=item.author.profile_image,
        content=item.text,
        created_at=parse_timestamp(item.created_at),
        media_urls=_media_urls(item.media or []),
        metrics=metrics,
        url_entities=_entities(item.urls),
        raw_data=item.raw,
    )


def _post_from_platform(item: PlatformApiItem, payload: Mapping[str, Any]) -> Post:
    user = item.core.user_results.result.legacy
    legacy = item.legacy
    entities = legacy.entities or _PlatformEntities()
    return Post(
        post_id=item.rest_id,
        author_username=user.screen_name,
        author_name=user.name,
        author_profile_image=user.profile_image_url_https,
        content=legacy.full_text,
        created_at=parse_timestamp(legacy.created_at),
        media_urls=_media_urls([m.media_url_https for m in entities.media]),
        metrics=PostMetrics(
            replies=legacy.reply_count,
            reposts=legacy.retweet_count,
            likes=legacy.favorite_count,
            quotes=legacy.quote_count,
            bookmarks=legacy.bookmark_count,
        ),
        url_entities=_entities(entities.urls),
        raw_data=dict(payload),
    )


def parse_compact_export(item: Mapping[str, Any]) -> Post | None:
    try:
        parsed = CompactExportItem.model_validate(item)
    except ValidationError:
        return None
    return _post_from_compact(parsed)


def parse_platform_api(item: Mapping[str, Any]) -> Post | None:
    try:
        parsed = PlatformApiItem.model_validate(item)
    except ValidationError:
        return None
    return _post_from_platform(parsed, item)


ItemParser = Callable[[Mapping[str, Any]], "Post | None"]

# Order matters: the first parser that accepts an item wins.
ITEM_PARSERS: tuple[ItemParser, ...] = (parse_compact_export, parse_platform_api)


def normalize_item(item: Any, *, parsers: Sequence[ItemParser] = ITEM_PARSERS) -> Post | None:
    if not isinstance(item, Mapping):
        return None
    for parser in parsers:
        post = parser(item)
        if post is not None:
            return post
    return None


def parse_post(item: Any) -> Post:
    post = normalize_item(item)
    if post is None:
        kind = type(item).__name__
        raise ParseError(f"Item ({kind}) matches neither the compact export nor the platform API shape")
    return post


@dataclass(frozen=True)
class NormalizeResult:
    posts: Sequence[Post]
    rejected: int


def normalize_items(items: Sequence[Any], *, logger: EventLogger | None = None) -> NormalizeResult:
    log = ensure_logger(logger)
    posts: list[Post] = []
    rejected = 0
    for index, item in enumerate(items):
        try:
            posts.append(parse_post(item))
        except ParseError as e:
            rejected += 1
            log.debug("item_rejected", index=index, reason=str(e))
    return NormalizeResult(posts=posts, rejected=rejected)
