# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""
Structural comparison of YAML document streams.
Named list entries (BOSH instance groups, jobs, networks) are matched by
their identifier instead of their position.
"""

from dataclasses import dataclass
from typing import Any, List, Optional

import yaml

ADDED = "added"
REMOVED = "removed"
CHANGED = "changed"
ORDER = "order"

IDENTIFIER_KEYS = ("name", "id", "key")


@dataclass
class Difference:
    """A single difference at a path inside a document."""

    path: str
    kind: str
    old: Any = None
    new: Any = None
    document: int = 0


def _join(path: str, part: str) -> str:
    return f"{path.rstrip('/')}/{part}"


def _list_identifier(old: List[Any], new: List[Any]) -> Optional[str]:
    """Key shared by every entry of both lists, if the lists hold named maps."""
    items = old + new
    if not items or not all(isinstance(item, dict) for item in items):
        return None
    for key in IDENTIFIER_KEYS:
        if all(key in item for item in items):
            return key
    return None


def _compare(path: str, old: Any, new: Any, document: int, out: List[Difference]) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        _compare_maps(path, old, new, document, out)
    elif isinstance(old, list) and isinstance(new, list):
        _compare_lists(path, old, new, document, out)
    elif type(old) is not type(new) or old != new:
        out.append(Difference(path, CHANGED, old=old, new=new, document=document))


def _compare_maps(path: str, old: dict, new: dict, document: int, out: List[Difference]) -> None:
    removed = {k: v for k, v in old.items() if k not in new}
    added = {k: v for k, v in new.items() if k not in old}
    if removed:
        out.append(Difference(path, REMOVED, old=removed, document=document))
    if added:
        out.append(Difference(path, ADDED, new=added, document=document))
    for key, value in old.items():
        if key in new:
            _compare(_join(path, str(key)), value, new[key], document, out)


def _compare_lists(path: str, old: list, new: list, document: int, out: List[Difference]) -> None:
    key = _list_identifier(old, new)
    if key is None:
        if old == new:
            return
        removed = [item for item in old if item not in new]
        added = [item for item in new if item not in old]
        if removed:
            out.append(Difference(path, REMOVED, old=removed, document=document))
        if added:
            out.append(Difference(path, ADDED, new=added, document=document))
        if not removed and not added:
            out.append(Difference(path, ORDER, old=old, new=new, document=document))
        return

    old_by_id = {item[key]: item for item in old}
    new_by_id = {item[key]: item for item in new}
    removed = [item for item in old if item[key] not in new_by_id]
    added = [item for item in new if item[key] not in old_by_id]
    if removed:
        out.append(Difference(path, REMOVED, old=removed, document=document))
    if added:
        out.append(Difference(path, ADDED, new=added, document=document))

    common_old = [item[key] for item in old if item[key] in new_by_id]
    common_new = [item[key] for item in new if item[key] in old_by_id]
    if common_old != common_new:
        out.append(Difference(path, ORDER, old=common_old, new=common_new, document=document))

    for ident in common_old:
        _compare(_join(path, f"{key}={ident}"), old_by_id[ident], new_by_id[ident], document, out)


def compare_documents(old_docs: List[Any], new_docs: List[Any]) -> List[Difference]:
    """
    Compare two YAML document streams.

    Returns:
        Differences in the order they were discovered; empty when equal.
    """
    differences: List[Difference] = []
    for index in range(max(len(old_docs), len(new_docs))):
        if index >= len(new_docs):
            differences.append(Difference("/", REMOVED, old=old_docs[index], document=index))
        elif index >= len(old_docs):
            differences.append(Difference("/", ADDED, new=new_docs[index], document=index))
        else:
            _compare("/", old_docs[index], new_docs[index], index, differences)
    return differences


def _dump(value: Any) -> str:
    text = yaml.safe_dump(value, default_flow_style=False, sort_keys=False).rstrip()
    if text.endswith("\n..."):
        text = text[:-4]
    return text


def _indent(text: str, prefix: str) -> str:
    return "\n".join(prefix + line for line in text.splitlines())


def _count(value: Any, kind: str) -> str:
    entry = "map" if isinstance(value, dict) else "list"
    n = len(value) if isinstance(value, (dict, list)) else 1
    noun = "entry" if n == 1 else "entries"
    amount = "one" if n == 1 else str(n)
    return f"{amount} {entry} {noun} {kind}"


def render_report(differences: List[Difference]) -> str:
    """Render differences as a human-readable report, one block per path."""
    multi_document = any(d.document > 0 for d in differences)
    blocks = []
    for diff in differences:
        title = diff.path
        if multi_document:
            title = f"{title}  (document #{diff.document + 1})"

        if diff.kind == ADDED:
            body = [f"  + {_count(diff.new, 'added')}:", _indent(_dump(diff.new), "    ")]
        elif diff.kind == REMOVED:
            body = [f"  - {_count(diff.old, 'removed')}:", _indent(_dump(diff.old), "    ")]
        elif diff.kind == ORDER:
            body = [
                "  ⇆ order changed",
                "    - " + ", ".join(str(item) for item in diff.old),
                "    + " + ", ".join(str(item) for item in diff.new),
            ]
        else:
            body = [
                "  ± value change",
                _indent(_dump(diff.old), "    - "),
                _indent(_dump(diff.new), "    + "),
            ]
        blocks.append("\n".join([title] + body))
    return "\n\n".join(blocks)
