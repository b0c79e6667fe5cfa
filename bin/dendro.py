#!/usr/bin/env python3
"""Dendro: tree-structured chat server.

Local-first Flask server that owns one dendro.jsonl state file, streams
chat turns from Gemini or OpenRouter, and lets any selected span of a
reply become the anchor of a child conversation that inherits a frozen
summary of its parent.

Usage:
    # Server mode (default)
    export DENDRO_STATE_FILE="/abs/path/to/dendro.jsonl"
    export OPENROUTER_API_KEY=...
    python bin/dendro.py

    # Load the example "How does machine learning work?" tree
    python bin/dendro.py seed

Then point the UI at http://127.0.0.1:8899/api/
"""

from __future__ import annotations

import json
import os
import sys
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict

from flask import Flask, Response, request as flask_request, jsonify

# Ensure bin/ is on the path so sibling modules are importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

import config as config_mod
from activity import ActivityLog
from config import Config, _build_providers, _derive_prefs, _load_config_yaml, load_config, parse_args
from exchange import MessageExchange
from providers import ProviderRegistry
from records import DendroError, NotFoundError, ProviderRequestError, ValidationError, utc_now_iso
from seed import seed_example
from state import Store
from summarize import BranchSummarizer
from tree import ConversationTree
from urlfetch import fetch_url_content, is_http_url


# ---------------------------------------------------------------------------
# SSE transport
# ---------------------------------------------------------------------------
class _SSEBody:
    """WSGI body for a TurnStream; the server's close() reaches the upstream call."""

    def __init__(self, events):
        self._events = events

    def __iter__(self):
        for event in self._events:
            yield f"data: {json.dumps(event, ensure_ascii=False)}\n\n"

    def close(self):
        self._events.close()


def _tree_payload(store: Store, tree) -> Dict[str, Any]:
    """Tree record plus its live conversations (oldest first) and project files."""
    payload = tree.to_dict()
    payload["conversations"] = [c.to_dict() for c in store.tree_conversations(tree.id) if not c.deleted_at]
    payload["files"] = [f.to_dict() for f in store.list_project_files(tree.id)]
    return payload


# ---------------------------------------------------------------------------
# Flask app factory
# ---------------------------------------------------------------------------
def create_app(
    cfg: Config,
    url_prefix: str = "",
    *,
    providers: ProviderRegistry | None = None,
    fetch_fn: Callable[[str, bool], str] | None = None,
) -> Flask:
    """Create and configure the Dendro Flask application instance."""
    app = Flask(__name__, static_folder=None)

    store = Store(cfg.state_file, reject_symlinks=cfg.reject_symlinks)
    activity = ActivityLog(cfg.activity_file)
    if providers is None:
        providers = ProviderRegistry(_build_providers(_load_config_yaml(cfg.config_path)), cfg.timeout_s)
    if fetch_fn is None:
        fetch_fn = lambda url, follow: fetch_url_content(url, follow, cfg.url_timeout_s)
    exchange = MessageExchange(
        store, providers,
        fetch_fn=fetch_fn,
        activity=activity,
        max_attachments=cfg.max_attachments,
        max_attachment_bytes=cfg.max_attachment_bytes,
    )
    summarizer = BranchSummarizer(store, providers, activity)
    views: OrderedDict[str, ConversationTree] = OrderedDict()
    views_lock = threading.Lock()

    app.extensions["dendro"] = {
        "store": store,
        "activity": activity,
        "providers": providers,
        "exchange": exchange,
        "summarizer": summarizer,
        "views": views,
    }

    # -- request helpers ----------------------------------------------------
    def _user() -> str:
        return flask_request.headers.get("X-Dendro-User", "").strip() or cfg.default_user

    def _prefs() -> Dict[str, Any]:
        """Per-request preferences; config.yaml edits apply without a restart."""
        return _derive_prefs(_load_config_yaml(cfg.config_path))

    def _body() -> Dict[str, Any]:
        body = flask_request.get_json(force=True, silent=True)
        return body if isinstance(body, dict) else {}

    def _session_view() -> ConversationTree:
        key = flask_request.headers.get("X-Dendro-Session", "").strip() or _user()
        with views_lock:
            view = views.get(key)
            if view is None:
                view = views[key] = ConversationTree()
                while len(views) > cfg.max_views:
                    views.popitem(last=False)
            else:
                views.move_to_end(key)
            return view

    def _views_showing(tree_id: str):
        with views_lock:
            return [v for v in views.values() if v.tree_id == tree_id]

    # -- errors / headers ---------------------------------------------------
    @app.errorhandler(DendroError)
    def handle_dendro_error(exc: DendroError):
        """Map the error taxonomy onto HTTP statuses."""
        if isinstance(exc, ProviderRequestError):
            print(f"[Dendro] Provider error (HTTP {exc.upstream_status}): {exc}")
            return jsonify({"ok": False, "error": "LLM request failed"}), exc.status
        return jsonify({"ok": False, "error": str(exc)}), exc.status

    @app.after_request
    def add_cors_headers(response):
        """Apply CORS headers for configured UI origins."""
        origin = flask_request.headers.get("Origin", "")
        if origin and origin in cfg.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = (
                "Content-Type, X-Dendro-User, X-Dendro-Session")
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
        return response

    # -- meta ---------------------------------------------------------------
    @app.route(url_prefix + "/health", methods=["GET"])
    def health():
        """Simple liveness endpoint for local health checks."""
        return jsonify({"ok": True})

    @app.route(url_prefix + "/api/providers", methods=["GET"])
    def providers_endpoint():
        """Provider metadata for the model picker (no secrets)."""
        return jsonify({"providers": providers.describe(), "prefs": _prefs()})

    # -- trees --------------------------------------------------------------
    @app.route(url_prefix + "/api/trees", methods=["GET", "POST"])
    def trees_endpoint():
        """GET: list live trees.  POST: create a tree with its root conversation."""
        user_id = _user()
        if flask_request.method == "GET":
            return jsonify({"trees": [t.to_dict() for t in store.list_trees(user_id)]})
        body = _body()
        title = body.get("title")
        if not title or not isinstance(title, str):
            raise ValidationError("Title required")
        prefs = _prefs()
        tree, root = store.create_tree(
            user_id, title,
            body.get("model") or prefs["default_model"],
            body.get("verbosity") or prefs["root_verbosity"],
        )
        print(f"[Dendro] Tree created: {tree.id} '{tree.title}'")
        activity.log(user_id, "tree.created", {"title": tree.title},
                     tree_id=tree.id, conversation_id=root.id)
        return jsonify({"ok": True, "tree": _tree_payload(store, tree)})

    @app.route(url_prefix + "/api/trees/<tree_id>", methods=["GET", "PATCH", "DELETE"])
    def tree_endpoint(tree_id):
        """Read, rename/pin/soft-delete, or cascade-delete one tree."""
        user_id = _user()
        if flask_request.method == "GET":
            return jsonify({"tree": _tree_payload(store, store.get_tree(user_id, tree_id))})
        if flask_request.method == "DELETE":
            store.delete_tree(user_id, tree_id)
            for view in _views_showing(tree_id):
                view.reset()
            print(f"[Dendro] Tree deleted: {tree_id}")
            activity.log(user_id, "tree.deleted", {}, tree_id=tree_id)
            return jsonify({"ok": True})
        body = _body()
        fields: Dict[str, Any] = {}
        if "title" in body:
            fields["title"] = body["title"]
        if "pinned" in body:
            fields["pinned_at"] = utc_now_iso() if body["pinned"] else None
        if "deleted" in body:
            fields["deleted_at"] = utc_now_iso() if body["deleted"] else None
        tree = store.update_tree(user_id, tree_id, fields)
        return jsonify({"ok": True, "tree": tree.to_dict()})

    @app.route(url_prefix + "/api/trees/<tree_id>/context-urls", methods=["POST", "DELETE"])
    def tree_context_urls(tree_id):
        """Scrape a URL into tree-wide context, or remove it."""
        user_id = _user()
        tree = store.get_tree(user_id, tree_id)
        url = _body().get("url")
        if not url or not isinstance(url, str):
            raise ValidationError("url is required")
        if flask_request.method == "DELETE":
            store.remove_tree_context_url(user_id, tree_id, url)
            activity.log(user_id, "url.removed", {"scope": "tree", "treeTitle": tree.title, "url": url},
                         tree_id=tree_id)
            return jsonify({"ok": True})
        if not is_http_url(url):
            raise ValidationError("Invalid URL")
        content = fetch_fn(url, _prefs()["url_fetch_same_domain"])
        if not content:
            return jsonify({"ok": False, "error": "Could not fetch content from URL"}), 422
        tree = store.add_tree_context_url(user_id, tree_id, url, content)
        entry = next(c for c in tree.context_urls if c.url == url)
        print(f"[Dendro] Tree URL scraped: {url} ({len(content)} chars)")
        activity.log(user_id, "url.scraped", {
            "scope": "tree", "treeTitle": tree.title, "url": url, "contentLength": len(content),
        }, tree_id=tree_id)
        return jsonify({"url": url, "scrapedAt": entry.scraped_at, "contentLength": len(content)})

    @app.route(url_prefix + "/api/trees/<tree_id>/files", methods=["GET", "POST"])
    def project_files(tree_id):
        """GET: list project files.  POST: add one ({name, content})."""
        user_id = _user()
        tree = store.get_tree(user_id, tree_id)
        if flask_request.method == "GET":
            return jsonify({"files": [f.to_dict() for f in store.list_project_files(tree.id)]})
        body = _body()
        pf = store.add_project_file(user_id, tree_id, body.get("name", ""), body.get("content"))
        activity.log(user_id, "file.added", {"name": pf.name, "size": len(pf.content)}, tree_id=tree_id)
        return jsonify({"ok": True, "file": pf.to_dict()})

    @app.route(url_prefix + "/api/trees/<tree_id>/files/<file_id>", methods=["DELETE"])
    def project_file(tree_id, file_id):
        user_id = _user()
        store.delete_project_file(user_id, tree_id, file_id)
        activity.log(user_id, "file.removed", {"fileId": file_id}, tree_id=tree_id)
        return jsonify({"ok": True})

    # -- conversations ------------------------------------------------------
    @app.route(url_prefix + "/api/conversations", methods=["POST"])
    def create_conversation():
        """Create a conversation node (branch fields optional)."""
        user_id = _user()
        body = _body()
        tree_id = body.get("treeId")
        if not tree_id or not body.get("title"):
            raise ValidationError("treeId and title required")
        prefs = _prefs()
        conv = store.create_conversation(
            user_id, tree_id, body["title"],
            body.get("model") or prefs["default_model"],
            body.get("verbosity") or prefs["default_verbosity"],
            parent_id=body.get("parentId"),
            branch_text=body.get("branchText"),
            branch_message_id=body.get("branchMessageId"),
            branch_summary=body.get("branchSummary"),
        )
        for view in _views_showing(tree_id):
            view.add_node(conv.to_dict())
        activity.log(user_id, "conversation.created", {"title": conv.title, "model": conv.model},
                     tree_id=tree_id, conversation_id=conv.id)
        return jsonify({"ok": True, "conversation": conv.to_dict()})

    @app.route(url_prefix + "/api/conversations/<conv_id>", methods=["PATCH", "DELETE"])
    def conversation_endpoint(conv_id):
        """PATCH: title/model/verbosity/closedAt/deletedAt.  DELETE: remove the subtree."""
        user_id = _user()
        conv = store.get_conversation(user_id, conv_id)
        if flask_request.method == "DELETE":
            removed = store.delete_conversation(user_id, conv_id)
            for view in _views_showing(conv.tree_id):
                view.soft_delete(conv_id)
            print(f"[Dendro] Conversation deleted: {conv_id} ({len(removed)} nodes)")
            activity.log(user_id, "conversation.deleted", {
                "title": conv.title, "deletedIds": removed,
            }, tree_id=conv.tree_id, conversation_id=conv_id)
            return jsonify({"ok": True, "deleted": removed})
        body = _body()
        mapping = {"title": "title", "model": "model", "verbosity": "verbosity",
                   "closedAt": "closed_at", "deletedAt": "deleted_at"}
        fields = {dst: body[src] for src, dst in mapping.items() if src in body}
        conv = store.update_conversation(user_id, conv_id, fields)
        for view in _views_showing(conv.tree_id):
            if conv.deleted_at:
                view.soft_delete(conv_id)
            else:
                view.update_node(conv_id, {k: v for k, v in conv.to_dict().items() if k in mapping})
        return jsonify({"ok": True, "conversation": conv.to_dict()})

    @app.route(url_prefix + "/api/conversations/<conv_id>/messages", methods=["GET", "POST"])
    def messages_endpoint(conv_id):
        """GET: transcript.  POST: submit a turn (SSE stream, or one JSON body)."""
        user_id = _user()
        if flask_request.method == "GET":
            store.get_conversation(user_id, conv_id)
            return jsonify({"messages": [m.to_dict() for m in store.list_messages(conv_id)]})

        body = _body()
        prefs = _prefs()
        turn = exchange.prepare(
            user_id, conv_id, body.get("content"),
            body.get("attachments"), body.get("urls"),
            prefs=prefs,
        )
        try:
            view = _session_view()
            listener = view if view.tree_id == turn.conversation.tree_id else None
            if listener is not None:
                listener.add_message(conv_id, store.get_message(turn.user_message.id).to_dict())
        except BaseException:
            exchange.release(turn)
            raise

        if not prefs["streaming"]:
            result = exchange.run(turn)
            if listener is not None:
                listener.add_message(conv_id, store.get_message(result["messageId"]).to_dict())
            return jsonify(result)

        headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
        return Response(_SSEBody(exchange.stream(turn, listener)),
                        mimetype="text/event-stream", headers=headers)

    @app.route(url_prefix + "/api/conversations/<conv_id>/context-urls", methods=["POST", "DELETE"])
    def conversation_context_urls(conv_id):
        """Scrape a URL into this conversation's context, or remove it."""
        user_id = _user()
        conv = store.get_conversation(user_id, conv_id)
        url = _body().get("url")
        if not url or not isinstance(url, str):
            raise ValidationError("url is required")
        if flask_request.method == "DELETE":
            store.remove_conversation_context_url(user_id, conv_id, url)
            activity.log(user_id, "url.removed", {"scope": "conversation", "url": url},
                         tree_id=conv.tree_id, conversation_id=conv_id)
            return jsonify({"ok": True})
        if not is_http_url(url):
            raise ValidationError("Invalid URL")
        content = fetch_fn(url, _prefs()["url_fetch_same_domain"])
        if not content:
            return jsonify({"ok": False, "error": "Could not fetch content from URL"}), 422
        conv = store.add_conversation_context_url(user_id, conv_id, url, content)
        entry = next(c for c in conv.context_urls if c.url == url)
        activity.log(user_id, "url.scraped", {
            "scope": "conversation", "url": url, "contentLength": len(content),
        }, tree_id=conv.tree_id, conversation_id=conv_id)
        return jsonify({"url": url, "scrapedAt": entry.scraped_at, "contentLength": len(content)})

    # -- summaries / branches -----------------------------------------------
    @app.route(url_prefix + "/api/summarize", methods=["POST"])
    def summarize_endpoint():
        """Branch preview: summary up to an anchor plus a suggested title."""
        body = _body()
        if not body.get("conversationId"):
            raise ValidationError("conversationId required")
        result = summarizer.summarize(
            _user(), body["conversationId"], body.get("upToMessageId"), body.get("selectedText"))
        return jsonify(result.to_dict())

    @app.route(url_prefix + "/api/summarize-text", methods=["POST"])
    def summarize_text_endpoint():
        """One-off 1-3 sentence summary of arbitrary text."""
        return jsonify({"summary": summarizer.summarize_text(_user(), _body().get("text"))})

    @app.route(url_prefix + "/api/branches", methods=["POST"])
    def branches_endpoint():
        """Create a child conversation anchored at a message and a selected span."""
        user_id = _user()
        body = _body()
        if not body.get("parentId"):
            raise ValidationError("parentId required")
        prefs = _prefs()
        conv, summary = summarizer.create_branch(
            user_id, body["parentId"], body.get("branchMessageId"), body.get("selectedText"),
            model=body.get("model") or prefs["branch_model"],
            verbosity=body.get("verbosity") or prefs["branch_verbosity"],
            title=body.get("title"),
        )
        for view in _views_showing(conv.tree_id):
            view.add_node(conv.to_dict())
            view.set_active(conv.id)
        return jsonify({"ok": True, "conversation": conv.to_dict(), **summary.to_dict()})

    # -- activity -----------------------------------------------------------
    @app.route(url_prefix + "/api/activity", methods=["GET"])
    def activity_endpoint():
        """Newest-first activity page with optional filters."""
        args = flask_request.args
        try:
            limit = int(args.get("limit") or 50)
        except ValueError:
            raise ValidationError("limit must be an integer")
        return jsonify(activity.entries(
            _user(),
            limit=limit,
            action=args.get("action") or None,
            before=args.get("before") or None,
            tree_id=args.get("treeId") or None,
            conversation_id=args.get("conversationId") or None,
        ))

    # -- session view (tree mirror) -----------------------------------------
    @app.route(url_prefix + "/api/view", methods=["GET"])
    def view_endpoint():
        return jsonify(_session_view().snapshot())

    @app.route(url_prefix + "/api/view/<action>", methods=["POST"])
    def view_action(action):
        """load {treeId} | active {conversationId} | close / reopen {conversationId}."""
        user_id = _user()
        view = _session_view()
        body = _body()
        if action == "load":
            payload = _tree_payload(store, store.get_tree(user_id, body.get("treeId") or ""))
            view.load(payload)
            for conv in payload["conversations"]:
                view.set_messages(conv["id"], [m.to_dict() for m in store.list_messages(conv["id"])])
            return jsonify(view.snapshot())
        conv_id = body.get("conversationId") or ""
        store.get_conversation(user_id, conv_id)
        if action == "active":
            view.set_active(conv_id)
        elif action == "close":
            store.update_conversation(user_id, conv_id, {"closed_at": utc_now_iso()})
            view.close(conv_id)
        elif action == "reopen":
            store.update_conversation(user_id, conv_id, {"closed_at": None})
            view.reopen(conv_id)
        else:
            raise NotFoundError(f"Unknown view action: {action}")
        return jsonify(view.snapshot())

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main(argv: list | None = None) -> int:
    """Entrypoint for server startup and the one-shot seed command."""
    args = parse_args(argv)
    config_mod.DEBUG_MODE = args.debug
    cfg = load_config()

    if args.cmd == "seed":
        store = Store(cfg.state_file, reject_symlinks=cfg.reject_symlinks)
        tree = seed_example(store, args.user or cfg.default_user)
        print(json.dumps({"ok": True, "treeId": tree.id, "state_file": str(cfg.state_file)}, indent=2))
        return 0

    # Default: serve
    url_prefix = (args.url_prefix or os.environ.get("DENDRO_URL_PREFIX", "")).strip().rstrip("/")
    cfg_yaml = _load_config_yaml(cfg.config_path)
    provider_cfgs = _build_providers(cfg_yaml)

    print(f"\n{'='*60}")
    print(f"  Dendro")
    print(f"{'='*60}")
    print(f"  State file : {cfg.state_file or '(memory only)'}")
    print(f"  Activity   : {cfg.activity_file or '(memory only)'}")
    print(f"  Bind       : {cfg.bind_host}:{cfg.bind_port}")
    if url_prefix:
        print(f"  URL prefix : {url_prefix}")
    print(f"  Providers  :")
    for key, pcfg in provider_cfgs.items():
        status = "ok" if pcfg.get("api_key") else "NO KEY"
        print(f"    {key}({status}, {pcfg.get('default_model', '')})")
    print(f"  Config YAML: {config_mod._CONFIG_YAML_STATUS}")
    print(f"  Debug      : {'ON' if config_mod.DEBUG_MODE else 'off'}")
    print(f"  API        : http://{cfg.bind_host}:{cfg.bind_port}{url_prefix}/api/")
    print(f"{'='*60}\n")

    app = create_app(cfg, url_prefix=url_prefix,
                     providers=ProviderRegistry(provider_cfgs, cfg.timeout_s))
    app.run(host=cfg.bind_host, port=cfg.bind_port, debug=False, threaded=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
