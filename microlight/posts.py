"""
Post service used by the Micropub endpoint and the CLI.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Sequence
from urllib.parse import urlparse

from .db import DB, IDENTITY, POST, Post, Repository, parse_iso
from .sql import Escape, Op, Predicate, slugify

log = logging.getLogger(__name__)

SLUG_TIME_FMT = "%Y%m%d%H%M%S"


class PostNotFound(LookupError):
    pass


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _posts(db: DB) -> Repository:
    return Repository(db, POST)


def slug_predicate(slug: str) -> Predicate:
    return Predicate("slug", slug, Op.EQUAL, Escape.SLUG)


def find_posts(
    db: DB, predicates: Iterable[Predicate] = (), limit: int = -1, offset: int = 0
) -> list[Post]:
    return _posts(db).find(predicates, limit, offset)


def find_post(db: DB, slug: str) -> Post | None:
    return _posts(db).find_one([slug_predicate(slug)])


def delete_post(db: DB, slug: str) -> None:
    posts = _posts(db)
    where = [slug_predicate(slug)]

    # check the post exists before trying to delete it
    if posts.count(where) == 0:
        raise PostNotFound(f"Post {slug!r} does not exist")
    posts.delete(where)
    log.info("Deleted post %s", slug)


def _unique_slug(posts: Repository, base: str) -> str:
    slug, n = base, 1
    while posts.count([Predicate("slug", slug)]):
        n += 1
        slug = f"{base}-{n}"
    return slug


def create_post(
    db: DB,
    *,
    content: str,
    name: str | None = None,
    tags: Sequence[str] = (),
    location: str | None = None,
    url: str | None = None,
    slug: str | None = None,
    published: str | None = None,
) -> Post:
    if not content or not str(content).strip():
        raise ValueError("content is required")
    content = str(content)
    name = str(name) if name else None
    if published:
        published = str(published)
        parse_iso(published)  # ValueError on garbage

    now = utc_now()
    posts = _posts(db)
    base = slugify(slug or "") or slugify(name or "") or now.strftime(SLUG_TIME_FMT)
    owner = Repository(db, IDENTITY).find_one()

    post = Post(
        name=name,
        content=content,
        type="article" if name else "note",
        slug=_unique_slug(posts, base),
        published=published or now.isoformat(timespec="seconds"),
        tags=list(tags),
        location=str(location) if location else None,
        url=str(url) if url else None,
        identity_id=owner.id if owner else None,
    )
    post.id = posts.insert(post)
    log.info("Created %s %s", post.type, post.slug)
    # re-read so tags come back exactly as stored
    return posts.find_one([Predicate("id", post.id)])


################################################################################
# URLs + Micropub source format
################################################################################
def post_url(base_url: str, slug: str) -> str:
    return f"{base_url.rstrip('/')}/post/{slug}"


def slug_from_url(url: str) -> str:
    """``https://example.com/post/hello-world/`` → ``"hello-world"``"""
    parts = [p for p in urlparse(url or "").path.split("/") if p]
    if not parts:
        raise ValueError(f"No post slug in URL {url!r}")
    return parts[-1]


def post_to_mf2(post: Post, base_url: str) -> dict:
    props = {
        "content": [post.content],
        "published": [post.published],
        "url": [post_url(base_url, post.slug)],
    }
    if post.name:
        props["name"] = [post.name]
    if post.tags:
        props["category"] = list(post.tags)
    if post.location:
        props["location"] = [post.location]
    if post.url:
        props["bookmark-of"] = [post.url]
    return {"type": ["h-entry"], "properties": props}
