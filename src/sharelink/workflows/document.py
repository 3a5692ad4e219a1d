"""Minimal window/document emulation for sandboxed page scripts.

The page body is parsed host-side with lxml (BeautifulSoup as fallback) into
a plain node tree; that tree is handed to the realm and rebuilt there as a
small element graph supporting ``getElementById`` and attribute access. The
parse is best-effort: every parser diagnostic is swallowed and an empty
document is produced rather than an error.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from lxml import etree

from .sandbox import SandboxRealm

logger = logging.getLogger(__name__)

Node = Dict[str, Any]

# Elements whose content is never needed by the emulated document.
_SKIP_CHILDREN = {"script", "style", "noscript", "template"}

_WINDOW_JS = r"""
(function (g, vars) {
    g.window = g;
    g.self = g;
    g.top = g;
    g.parent = g;

    function own(map, key) {
        return Object.prototype.hasOwnProperty.call(map, key);
    }

    function Element(tag, attrs) {
        this.tagName = String(tag).toUpperCase();
        this.nodeName = this.tagName;
        this.nodeType = 1;
        this.parentNode = null;
        this.childNodes = [];
        this.children = this.childNodes;
        Object.defineProperty(this, '_attributes', {value: Object.create(null)});
        for (var name in attrs) {
            if (own(attrs, name)) {
                this._attributes[String(name).toLowerCase()] = '' + attrs[name];
            }
        }
    }

    Element.prototype.getAttribute = function (name) {
        var key = String(name).toLowerCase();
        return key in this._attributes ? this._attributes[key] : null;
    };
    Element.prototype.setAttribute = function (name, value) {
        this._attributes[String(name).toLowerCase()] = '' + value;
    };
    Element.prototype.hasAttribute = function (name) {
        return String(name).toLowerCase() in this._attributes;
    };
    Element.prototype.removeAttribute = function (name) {
        delete this._attributes[String(name).toLowerCase()];
    };
    Element.prototype.appendChild = function (child) {
        if (child && child.parentNode) {
            child.parentNode.removeChild(child);
        }
        child.parentNode = this;
        this.childNodes.push(child);
        return child;
    };
    Element.prototype.removeChild = function (child) {
        var i = this.childNodes.indexOf(child);
        if (i >= 0) {
            this.childNodes.splice(i, 1);
            child.parentNode = null;
        }
        return child;
    };

    var reflected = {id: 'id', href: 'href', src: 'src', name: 'name', title: 'title', className: 'class'};
    Object.keys(reflected).forEach(function (prop) {
        var attr = reflected[prop];
        Object.defineProperty(Element.prototype, prop, {
            configurable: true,
            get: function () {
                var value = this.getAttribute(attr);
                return value === null ? '' : value;
            },
            set: function (value) {
                this.setAttribute(attr, value);
            }
        });
    });

    function build(node, parent) {
        var el = new Element(node.tag, node.attrs || {});
        el.parentNode = parent;
        var kids = node.children || [];
        for (var i = 0; i < kids.length; i++) {
            el.childNodes.push(build(kids[i], el));
        }
        return el;
    }

    function walk(root, visit) {
        var stack = [root];
        while (stack.length) {
            var el = stack.pop();
            if (visit(el)) {
                return el;
            }
            for (var i = el.childNodes.length - 1; i >= 0; i--) {
                stack.push(el.childNodes[i]);
            }
        }
        return null;
    }

    var root = build(vars.tree, null);
    var loc = vars.location;
    var location = {
        href: loc.href,
        protocol: loc.protocol,
        host: loc.host,
        hostname: loc.hostname,
        port: loc.port,
        pathname: loc.pathname,
        search: loc.search,
        hash: loc.hash,
        origin: loc.origin,
        toString: function () { return this.href; }
    };

    var document = {
        nodeType: 9,
        documentElement: root,
        location: location,
        URL: loc.href,
        getElementById: function (id) {
            var wanted = '' + id;
            return walk(root, function (el) { return el.getAttribute('id') === wanted; });
        },
        getElementsByTagName: function (name) {
            var wanted = String(name).toUpperCase(), found = [];
            walk(root, function (el) {
                if (wanted === '*' || el.tagName === wanted) {
                    found.push(el);
                }
                return false;
            });
            return found;
        },
        createElement: function (tag) {
            return new Element(tag, {});
        }
    };
    document.head = walk(root, function (el) { return el.tagName === 'HEAD'; });
    document.body = walk(root, function (el) { return el.tagName === 'BODY'; });

    g.document = document;
    g.location = location;
})(this, dukpy);
"""


def _empty_tree() -> Node:
    return {"tag": "html", "attrs": {}, "children": [
        {"tag": "head", "attrs": {}, "children": []},
        {"tag": "body", "attrs": {}, "children": []},
    ]}


def _node_from_lxml(root: Any) -> Node:
    tree: Node = {"tag": str(root.tag).lower(), "attrs": dict(root.attrib), "children": []}
    stack = [(root, tree)]
    while stack:
        element, node = stack.pop()
        if node["tag"] in _SKIP_CHILDREN:
            continue
        for child in element:
            if not isinstance(child.tag, str):
                continue
            child_node: Node = {"tag": child.tag.lower(), "attrs": dict(child.attrib), "children": []}
            node["children"].append(child_node)
            stack.append((child, child_node))
    return tree


def _soup_attrs(attrs: Dict[str, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for key, value in attrs.items():
        if isinstance(value, (list, tuple)):
            value = " ".join(str(v) for v in value)
        out[str(key).lower()] = "" if value is None else str(value)
    return out


def _node_from_soup(soup: BeautifulSoup) -> Node:
    html = soup.find("html")
    tree: Node = {"tag": "html", "attrs": _soup_attrs(html.attrs) if html else {}, "children": []}
    stack = [(html or soup, tree)]
    while stack:
        element, node = stack.pop()
        if node["tag"] in _SKIP_CHILDREN:
            continue
        for child in element.find_all(True, recursive=False):
            child_node: Node = {"tag": child.name.lower(), "attrs": _soup_attrs(child.attrs), "children": []}
            node["children"].append(child_node)
            stack.append((child, child_node))
    return tree


def _parse_lxml(body: str) -> Optional[Node]:
    parser = etree.HTMLParser(recover=True, remove_comments=True, remove_pis=True, no_network=True)
    try:
        root = etree.fromstring(body, parser)
    except (ValueError, etree.LxmlError):
        # e.g. str input carrying an XML encoding declaration
        try:
            root = etree.fromstring(body.encode("utf-8", "replace"), parser)
        except (ValueError, etree.LxmlError):
            return None
    if root is None:
        return None
    return _node_from_lxml(root)


def parse_document(body: str) -> Node:
    """Parse an HTML body into a plain node tree. Never raises."""

    text = body if isinstance(body, str) else str(body or "")
    if not text.strip():
        return _empty_tree()
    tree = _parse_lxml(text)
    if tree is None:
        try:
            tree = _node_from_soup(BeautifulSoup(text, "html.parser"))
        except Exception:
            logger.debug("html fallback parse failed; using empty document")
            tree = _empty_tree()
    if tree["tag"] != "html":
        tree = {"tag": "html", "attrs": {}, "children": [tree]}
    return tree


def find_ids(tree: Node) -> List[str]:
    """All element ids in document order."""

    ids: List[str] = []
    stack = [tree]
    while stack:
        node = stack.pop()
        element_id = node.get("attrs", {}).get("id")
        if element_id is not None:
            ids.append(element_id)
        stack.extend(reversed(node.get("children", [])))
    return ids


def ensure_elements(tree: Node, element_ids: Iterable[str]) -> Node:
    """Append empty anchors under <body> for ids the page does not carry."""

    present = set(find_ids(tree))
    missing = [element_id for element_id in element_ids if element_id and element_id not in present]
    if not missing:
        return tree
    body = next((child for child in tree["children"] if child.get("tag") == "body"), None)
    if body is None:
        body = {"tag": "body", "attrs": {}, "children": []}
        tree["children"].append(body)
    for element_id in missing:
        body["children"].append({"tag": "a", "attrs": {"id": element_id}, "children": []})
    return tree


def location_for(page_url: str) -> Dict[str, str]:
    try:
        parsed = urlparse(page_url or "")
    except ValueError:
        # e.g. an unbalanced IPv6 bracket
        parsed = urlparse("")
    scheme = f"{parsed.scheme}:" if parsed.scheme else ""
    origin = f"{parsed.scheme}://{parsed.netloc}" if parsed.scheme and parsed.netloc else ""
    try:
        port = parsed.port
    except ValueError:
        # out of range or not numeric
        port = None
    return {
        "href": page_url or "",
        "protocol": scheme,
        "host": parsed.netloc,
        "hostname": parsed.hostname or "",
        "port": str(port) if port else "",
        "pathname": parsed.path or "/",
        "search": f"?{parsed.query}" if parsed.query else "",
        "hash": f"#{parsed.fragment}" if parsed.fragment else "",
        "origin": origin,
    }


def install_window(
    realm: SandboxRealm,
    body: str,
    page_url: str = "",
    *,
    ensure_ids: Iterable[str] = (),
) -> Node:
    """Install window aliases and the parsed document into ``realm``."""

    tree = ensure_elements(parse_document(body), ensure_ids)
    realm.install(_WINDOW_JS, {"tree": tree, "location": location_for(page_url)})
    return tree


__all__ = [
    "parse_document",
    "find_ids",
    "ensure_elements",
    "location_for",
    "install_window",
]
