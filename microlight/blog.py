#!/usr/bin/env python3
"""
A minimal Micropub backend.
"""

import os
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from . import auth
from .db import (
    DB,
    IDENTITY,
    RELME,
    DataCorruption,
    Identity,
    RelMe,
    Repository,
    StorageUnavailable,
    init_schema,
)
from .network import HTTPStatus
from .posts import (
    PostNotFound,
    create_post,
    delete_post,
    find_post,
    find_posts,
    post_to_mf2,
    post_url,
    slug_from_url,
)
from .sql import InvalidIdentifier, UnsafeBulkOperation

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("MICROLIGHT_DB_FILE", str(ROOT / "microlight.db")))
BASE_URL = os.environ.get("MICROLIGHT_BASE_URL", "http://localhost:5000/")
TOKEN_ENDPOINT = os.environ.get(
    "MICROLIGHT_TOKEN_ENDPOINT", "https://tokens.indieauth.com/token"
)
POSTS_PER_PAGE = int(os.environ.get("MICROLIGHT_POSTS_PER_PAGE", "20"))
SUPPORTED_QUERIES = ("config", "source")

try:
    __version__ = version("microlight")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    DATABASE=str(DB_FILE),
    BASE_URL=BASE_URL,
    TOKEN_ENDPOINT=TOKEN_ENDPOINT,
    POSTS_PER_PAGE=POSTS_PER_PAGE,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


###############################################################################
# Database helpers
###############################################################################
def get_db() -> DB:
    if "db" not in g:
        g.db = DB(app.config["DATABASE"])
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    init_schema(get_db())


###############################################################################
# Responses
###############################################################################
def micropub_response(status: HTTPStatus, contents=None, *, location=None):
    resp = jsonify(contents) if contents is not None else app.response_class()
    resp.status_code = status.code
    if location:
        resp.headers["Location"] = location
    return resp


def micropub_error(error: HTTPStatus = HTTPStatus.SERVER_ERROR, description=""):
    """Standard Micropub error payload."""
    return micropub_response(
        error, {"error": error.description, "error_description": description}
    )


def _int_arg(ctx: auth.RequestContext, key: str, default: int) -> int:
    raw = ctx.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer") from None


###############################################################################
# Authentication
###############################################################################
def micropub_auth_required(view):
    """Verify the bearer token before the view runs; pass the context on."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        ctx = auth.RequestContext.from_request(request)
        result = auth.verify_request(
            ctx,
            token_endpoint=app.config["TOKEN_ENDPOINT"],
            base_url=app.config["BASE_URL"],
        )
        if isinstance(result, auth.Rejected):
            app.logger.info("Micropub request rejected: %s", result.reason)
            return micropub_error(result.status, result.reason)
        return view(ctx, result, *args, **kwargs)

    return wrapped


###############################################################################
# Micropub
###############################################################################
@app.route("/micropub", methods=["GET"])
def micropub_query():
    ctx = auth.RequestContext.from_request(request)
    q = ctx.get("q")
    if q == "config":
        return micropub_response(HTTPStatus.OK, {"q": list(SUPPORTED_QUERIES)})
    if q != "source":
        return micropub_error(HTTPStatus.INVALID_REQUEST, f"Unsupported query {q!r}")

    base_url = app.config["BASE_URL"]
    url = ctx.get("url")
    if url:
        try:
            post = find_post(get_db(), slug_from_url(url))
        except ValueError as exc:
            return micropub_error(HTTPStatus.INVALID_REQUEST, str(exc))
        if post is None:
            return micropub_error(HTTPStatus.NOT_FOUND, "Post does not exist")
        return micropub_response(HTTPStatus.OK, post_to_mf2(post, base_url))

    try:
        limit = _int_arg(ctx, "limit", app.config["POSTS_PER_PAGE"])
        offset = _int_arg(ctx, "offset", 0)
        posts = find_posts(get_db(), limit=limit, offset=offset)
    except ValueError as exc:
        return micropub_error(HTTPStatus.INVALID_REQUEST, str(exc))
    return micropub_response(
        HTTPStatus.OK, {"items": [post_to_mf2(p, base_url) for p in posts]}
    )


@app.route("/micropub", methods=["POST"])
@micropub_auth_required
def micropub_post(ctx: auth.RequestContext, who: auth.Authorized):
    app.logger.debug("Micropub request from %s", who.me)
    action = ctx.post("action")
    if action == "delete":
        return _micropub_delete(ctx)
    if action is not None:
        return micropub_error(
            HTTPStatus.INVALID_REQUEST, f"Unsupported action {action!r}"
        )
    return _micropub_create(ctx)


def _micropub_delete(ctx: auth.RequestContext):
    url = ctx.post("url")
    if not url:
        return micropub_error(HTTPStatus.INVALID_REQUEST, "Missing url")
    try:
        delete_post(get_db(), slug_from_url(url))
    except (PostNotFound, ValueError) as exc:
        return micropub_error(HTTPStatus.INVALID_REQUEST, str(exc))
    return micropub_response(HTTPStatus.NO_CONTENT)


def _first(val):
    if isinstance(val, list):
        return val[0] if val else None
    return val


def _as_list(val) -> list:
    if val is None:
        return []
    if isinstance(val, list):
        return val
    return [t for t in str(val).split(",") if t.strip()]


def _content(val):
    # JSON content may be {"html": ...} / {"value": ...}
    val = _first(val)
    if isinstance(val, dict):
        return val.get("value") or val.get("html")
    return val


def _create_fields(ctx: auth.RequestContext) -> dict:
    if ctx.post("type"):
        # JSON syntax: {"type": ["h-entry"], "properties": {...}}
        if "h-entry" not in _as_list(ctx.post("type")):
            raise ValueError("Only h-entry posts are supported")
        props = ctx.post("properties") or {}
        if not isinstance(props, dict):
            raise ValueError("properties must be an object")
        get = props.get
        slug = get("mp-slug")
    else:
        if ctx.post("h") != "entry":
            raise ValueError("Only h=entry posts are supported")
        get = ctx.post
        slug = ctx.post("mp-slug")

    return {
        "name": _first(get("name")),
        "content": _content(get("content")),
        "tags": [str(t) for t in _as_list(get("category"))],
        "location": _first(get("location")),
        "url": _first(get("bookmark-of")) or _first(get("like-of")),
        "slug": _first(slug),
        "published": _first(get("published")),
    }


def _micropub_create(ctx: auth.RequestContext):
    try:
        post = create_post(get_db(), **_create_fields(ctx))
    except ValueError as exc:
        return micropub_error(HTTPStatus.INVALID_REQUEST, str(exc))
    return micropub_response(
        HTTPStatus.CREATED, location=post_url(app.config["BASE_URL"], post.slug)
    )


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(InvalidIdentifier)
@app.errorhandler(UnsafeBulkOperation)
@app.errorhandler(StorageUnavailable)
@app.errorhandler(DataCorruption)
def storage_error(exc):
    app.logger.exception("Storage failure: %s", exc)
    return micropub_error(HTTPStatus.SERVER_ERROR, "Storage failure")


@app.errorhandler(HTTPException)
def http_error(exc):
    for status in HTTPStatus:
        if status.code == exc.code:
            return micropub_error(status, exc.description)
    resp = jsonify({"error": exc.name, "error_description": exc.description})
    resp.status_code = exc.code or 500
    return resp


@app.errorhandler(500)
def internal_error(exc):
    return micropub_error(HTTPStatus.SERVER_ERROR, "Internal Server Error")


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
@click.option("--name", prompt=True, help="Name of the site owner")
@click.option("--email", default=None, help="Contact e-mail")
@click.option("--note", default=None, help="Short bio")
@click.option("--relme", multiple=True, help="rel=me profile URL (repeatable)")
def cli_init(name: str, email: str | None, note: str | None, relme: tuple[str, ...]):
    """Create the tables and the site identity (if none exists yet)."""
    db = get_db()
    init_schema(db)

    identities = Repository(db, IDENTITY)
    links = Repository(db, RELME)
    # identity and rel=me links land together or not at all
    with db.transaction():
        owner = identities.find_one()
        if owner is None:
            owner_id = identities.insert(
                Identity(name=name.strip(), email=email, note=note)
            )
            created = True
        else:
            owner_id = owner.id
            created = False
        for url in relme:
            links.insert(RelMe(url=url, identity_id=owner_id))

    if created:
        click.secho(f"\n✅  Identity {name.strip()!r} created.", fg="green")
    else:
        click.secho(f"\nIdentity {owner.name!r} already exists.", fg="yellow")
    for url in relme:
        click.echo(f"  rel=me → {url}")


@app.cli.command("posts")
@click.option("--limit", default=-1, help="How many posts to list (-1 = all)")
@click.option("--offset", default=0)
def cli_posts(limit: int, offset: int):
    """List post slugs."""
    for post in find_posts(get_db(), limit=limit, offset=offset):
        click.echo(f"{post.published}  {post.slug}")


@app.cli.command("delete")
@click.argument("slug")
def cli_delete(slug: str):
    """Delete a post by slug."""
    try:
        delete_post(get_db(), slug)
    except PostNotFound as exc:
        raise click.ClickException(str(exc)) from None
    click.secho(f"🗑  {slug} deleted.", fg="red")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
