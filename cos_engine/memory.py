"""
Memory and skill caches.

Memory lives on six graph pages and skills on one; both are read into the
system prompt through caches that pull-watches invalidate.

Features:
- Per-page (3000) and total (8000) memory caps, 5 minute TTL
- Skill entries parsed from top-level blocks, compact skill index (≤1400 chars)
- ``cos_update_memory`` guarded by the memory-injection scan
- ``cos_get_skill`` returning the full body and its declared Sources
- Bootstrap of the memory and skills pages
"""
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from cos_engine.config import (
    CACHE_INVALIDATE_DEBOUNCE_SECONDS,
    MEMORY_CACHE_TTL_SECONDS,
    MEMORY_MAX_CHARS_PER_PAGE,
    MEMORY_TOTAL_MAX_CHARS,
    SKILLS_INDEX_MAX_CHARS,
    SKILLS_MAX_CHARS,
)
from cos_engine.exceptions import ValidationError
from cos_engine.host import (
    GraphHost,
    create_block,
    ensure_page_uid,
    get_block_tree,
    get_page_tree,
    with_write_retry,
)
from cos_engine.security import StatRecorder, guard_memory_write
from cos_engine.store import Debouncer
from cos_engine.tool_registry import Tool, ToolOrigin

logger = logging.getLogger("cos.engine.memory")

MEMORY_PAGE_TITLES = (
    "Chief of Staff/Memory",
    "Chief of Staff/Inbox",
    "Chief of Staff/Projects",
    "Chief of Staff/Decisions",
    "Chief of Staff/Lessons Learned",
    "Chief of Staff/Improvement Requests",
)
SKILLS_PAGE_TITLE = "Chief of Staff/Skills"
DATED_LOG_PAGES = frozenset({
    "Chief of Staff/Decisions",
    "Chief of Staff/Lessons Learned",
    "Chief of Staff/Improvement Requests",
})

MEMORY_PAGE_ALIASES = {
    "memory": "Chief of Staff/Memory",
    "inbox": "Chief of Staff/Inbox",
    "notes": "Chief of Staff/Inbox",
    "idea": "Chief of Staff/Inbox",
    "ideas": "Chief of Staff/Inbox",
    "skill": SKILLS_PAGE_TITLE,
    "skills": SKILLS_PAGE_TITLE,
    "projects": "Chief of Staff/Projects",
    "decisions": "Chief of Staff/Decisions",
    "lessons": "Chief of Staff/Lessons Learned",
    "lessons_learned": "Chief of Staff/Lessons Learned",
    "lessons learned": "Chief of Staff/Lessons Learned",
    "improvements": "Chief of Staff/Improvement Requests",
    "improvement_requests": "Chief of Staff/Improvement Requests",
    "improvement requests": "Chief of Staff/Improvement Requests",
}

STARTER_MEMORY_PAGES: dict[str, list[str]] = {
    "Chief of Staff/Memory": [
        "Preferences and context for Chief of Staff AI assistant.",
        "Communication style: concise, action-oriented",
        "Timezone: (set your timezone)",
        "Key contacts: (add key people you work with)",
    ],
    "Chief of Staff/Inbox": [
        "Quick captures from chat (notes, ideas, reminders).",
        "Triage periodically into Projects or Decisions.",
    ],
    "Chief of Staff/Projects": [
        "Active projects tracked by Chief of Staff.",
        "(Add your projects here, one block per project with nested details)",
    ],
    "Chief of Staff/Decisions": [
        "Decision log. Chief of Staff appends entries with dates.",
        "{date} Initialised Chief of Staff memory system.",
    ],
    "Chief of Staff/Lessons Learned": [
        "Operational lessons, pitfalls, and fixes discovered while working.",
        "Format: problem → fix → prevention/guardrail.",
        "{date} Initialised lessons learned log.",
    ],
    "Chief of Staff/Improvement Requests": [
        "Capability gaps and friction the assistant noticed while working.",
        "{date} Initialised improvement requests log.",
    ],
}

STARTER_SKILLS: list[tuple[str, list[str]]] = [
    ("Weekly Planning", [
        "Trigger: user asks planning/prioritisation for the week",
        "Approach: list outcomes, sequence actions, identify blockers, assign next actions",
        "Output format: concise bullets with priorities and due dates",
    ]),
    ("Decision Review", [
        "Trigger: user asks for recommendation between options",
        "Approach: compare options, tradeoffs, risks, and reversibility",
        "Output format: recommendation + rationale + next action",
    ]),
    ("Structured Daily Briefing", [
        "Trigger: user asks for a daily briefing or morning summary",
        "Approach: gather calendar events, email signals and urgent tasks with tool calls before writing",
        "Output: structured briefing with sections Calendar, Email, Tasks and Top Priorities.",
    ]),
]

_SKILL_PREFIX_RE = re.compile(r"^skill\s*:\s*", re.IGNORECASE)
_SUMMARY_PREFIX_RE = re.compile(r"^(trigger|approach|output\s*format)\s*:\s*", re.IGNORECASE)
_FIRST_SENTENCE_RE = re.compile(r"^(.+?[.!?])(?:\s|$)")
_SOURCES_HEADER_RE = re.compile(r"^\s*-?\s*Sources\s*(?:—|-|:)?\s*$", re.IGNORECASE)
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")
_LIST_ITEM_RE = re.compile(r"^(\s*)(?:[-*+]|\d+[.)])\s+(.*)$")


# ── Tree text helpers ────────────────────────────────────────────────────────

def flatten_tree_to_lines(children: list[dict[str, Any]], depth: int = 0) -> list[str]:
    lines = []
    indent = "  " * max(0, depth)
    for child in children or []:
        text = str(child.get("text") or "").strip()
        if text:
            lines.append(f"{indent}- {text}")
        if child.get("children"):
            lines.extend(flatten_tree_to_lines(child["children"], depth + 1))
    return lines


def parse_markdown_to_block_tree(markdown: str) -> list[dict[str, Any]]:
    """
    Markdown headings and (indented) list items → ``[{text, children}]``.

    Headings nest by level; list items nest by indentation under the
    nearest heading. Plain lines become siblings at the current level.
    """
    raw = str(markdown or "").strip()
    if not raw:
        return []
    roots: list[dict[str, Any]] = []
    stack: list[tuple[dict[str, Any], float]] = []

    def push(node: dict[str, Any], depth: float) -> None:
        while stack and stack[-1][1] >= depth:
            stack.pop()
        (stack[-1][0]["children"] if stack else roots).append(node)
        stack.append((node, depth))

    heading_depth = 0.0
    for line in raw.split("\n"):
        if not line.strip():
            continue
        heading = _HEADING_RE.match(line.strip())
        if heading:
            heading_depth = float(len(heading.group(1)))
            push({"text": heading.group(2).strip(), "children": []}, heading_depth)
            continue
        item = _LIST_ITEM_RE.match(line.rstrip())
        if item:
            indent = len(item.group(1).replace("\t", "  ")) // 2
            push({"text": item.group(2).strip(), "children": []}, heading_depth + 10 + indent)
            continue
        push({"text": line.strip(), "children": []}, heading_depth + 10)
    return roots


async def create_block_tree(host: GraphHost, parent_uid: str, node: dict[str, Any],
                            order: int | str = "last") -> str:
    uid = await create_block(host, parent_uid, node.get("text") or "", order)
    for child in node.get("children") or []:
        await create_block_tree(host, uid, child, "last")
    return uid


# ── Skills ───────────────────────────────────────────────────────────────────

@dataclass
class SkillSource:
    tool: str
    description: str = ""


@dataclass
class SkillEntry:
    title: str
    raw_title: str
    uid: str | None
    content: str
    children_content: str
    summary: str = ""
    sources: list[SkillSource] = field(default_factory=list)


def normalise_skill_name(raw: Any) -> str:
    return _SKILL_PREFIX_RE.sub("", str(raw or "")).strip()


def _normalise_summary_line(line: str) -> str:
    text = re.sub(r"^\s*-+\s*", "", str(line or "").strip())
    return _SUMMARY_PREFIX_RE.sub("", text).strip()


def first_sentence(value: str) -> str:
    text = re.sub(r"\s+", " ", str(value or "")).strip()
    match = _FIRST_SENTENCE_RE.match(text)
    return match.group(1).strip() if match else text


def parse_skill_sources(content: str, known_tool_names: set[str] | None = None) -> list[SkillSource]:
    """
    Tools listed under a skill's ``Sources`` line.

    Each deeper-indented line names a tool before an optional ``—`` description.
    When ``known_tool_names`` is non-empty, unknown names are dropped.
    """
    sources: list[SkillSource] = []
    in_sources = False
    source_indent = -1
    for line in str(content or "").split("\n"):
        indent = len(line) - len(line.lstrip())
        if not in_sources:
            if _SOURCES_HEADER_RE.match(line):
                in_sources = True
                source_indent = indent
            continue
        if not line.strip():
            continue
        if indent <= source_indent:
            break
        body = re.sub(r"^\s*-\s*", "", line).strip()
        tool = re.split(r"\s*(?:—|–| - |:)\s*", body, maxsplit=1)[0].strip().strip("`")
        if not tool:
            continue
        if known_tool_names and tool not in known_tool_names:
            logger.debug("Skill source %r is not a registered tool", tool)
            continue
        sources.append(SkillSource(tool=tool, description=body))
    return sources


def build_skill_entries_from_tree(tree: dict[str, Any]) -> list[SkillEntry]:
    entries = []
    for index, child in enumerate(tree.get("children") or []):
        raw_title = str(child.get("text") or "").strip()
        if not raw_title:
            continue
        title = normalise_skill_name(raw_title) or f"Skill {index + 1}"
        detail_lines = flatten_tree_to_lines(child.get("children") or [], 1)
        children_lines = flatten_tree_to_lines(child.get("children") or [], 0)
        summary_text = " ".join(s for s in (_normalise_summary_line(line) for line in detail_lines) if s)
        content = "\n".join([f"- {title}", *detail_lines])
        entries.append(SkillEntry(
            title=title,
            raw_title=raw_title,
            uid=child.get("uid") or None,
            content=content,
            children_content="\n".join(children_lines),
            summary=first_sentence(summary_text),
            sources=parse_skill_sources(content),
        ))
    return entries


def build_skill_index(entries: list[SkillEntry], max_chars: int = SKILLS_INDEX_MAX_CHARS) -> str:
    if not entries:
        return ""
    lines = []
    used = 0
    for entry in entries:
        line = f"- {entry.title}: {entry.summary}" if entry.summary else f"- {entry.title}"
        if used + len(line) + 1 > max_chars:
            # Names always fit before summaries do.
            line = f"- {entry.title}"
            if used + len(line) + 1 > max_chars:
                break
        lines.append(line)
        used += len(line) + 1
    return (
        "## Available Skills\n\n" + "\n".join(lines)
        + "\n\nUse the cos_get_skill tool to load a skill's full instructions before applying it."
    )


def resolve_memory_page_title(page: Any) -> str | None:
    key = str(page or "").strip()
    if key in MEMORY_PAGE_TITLES or key == SKILLS_PAGE_TITLE:
        return key
    return MEMORY_PAGE_ALIASES.get(key.lower())


# ── Cache ────────────────────────────────────────────────────────────────────

class MemoryManager:
    """
    Cached memory and skills read from the graph.

    Usage:
        memory = MemoryManager(host)
        memory.watch()                        # pull-watch invalidation
        section = await memory.memory_content()
        index = await memory.skills_index()
        registry.register_many(memory.tools())
    """

    def __init__(self, host: GraphHost, clock: Callable[[], float] = time.time,
                 now: Callable[[], datetime] = datetime.now, record_stat: StatRecorder | None = None):
        self.host = host
        self.record_stat = record_stat
        self._clock = clock
        self._now = now
        self._memory_content = ""
        self._memory_expires_at = 0.0
        self._skill_entries: list[SkillEntry] | None = None
        self._skills_expires_at = 0.0
        self._unwatchers: list[Callable[[], None]] = []
        self._memory_debounce = Debouncer(CACHE_INVALIDATE_DEBOUNCE_SECONDS, self.invalidate_memory)
        self._skills_debounce = Debouncer(CACHE_INVALIDATE_DEBOUNCE_SECONDS, self.invalidate_skills)

    @staticmethod
    def system_page_titles() -> list[str]:
        return [*MEMORY_PAGE_TITLES, SKILLS_PAGE_TITLE]

    # ── Invalidation ─────────────────────────────────────────────

    def invalidate_memory(self) -> None:
        self._memory_content = ""
        self._memory_expires_at = 0.0

    def invalidate_skills(self) -> None:
        self._skill_entries = None
        self._skills_expires_at = 0.0

    def watch(self) -> int:
        """Register one pull-watch per memory and skills page; already-watched pages are skipped."""
        if self._unwatchers:
            return 0
        for title in self.system_page_titles():
            debounce = self._skills_debounce if title == SKILLS_PAGE_TITLE else self._memory_debounce
            try:
                self._unwatchers.append(self.host.pull_watch(title, lambda _b, _a, d=debounce: d.schedule()))
            except Exception as e:
                logger.warning("Failed to add pull watch for %s: %s", title, e)
        logger.debug("Pull watches registered: %d", len(self._unwatchers))
        return len(self._unwatchers)

    def unwatch(self) -> None:
        for unsubscribe in self._unwatchers:
            unsubscribe()
        self._unwatchers.clear()
        self._memory_debounce.cancel()
        self._skills_debounce.cancel()

    # ── Memory ───────────────────────────────────────────────────

    async def page_content(self, title: str, max_chars: int = MEMORY_MAX_CHARS_PER_PAGE) -> str:
        try:
            tree = await get_page_tree(self.host, title=title)
        except Exception as e:
            logger.warning("Failed to fetch memory page %s: %s", title, e)
            return ""
        if not tree["uid"] or not tree["children"]:
            return ""
        text = "\n".join(flatten_tree_to_lines(tree["children"]))
        if len(text) <= max_chars:
            return text
        return f"{text[:max_chars]}\n…[truncated]"

    async def memory_content(self, force: bool = False) -> str:
        if not force and self._memory_content and self._memory_expires_at > self._clock():
            return self._memory_content
        sections = []
        total = 0
        for title in MEMORY_PAGE_TITLES:
            remaining = MEMORY_TOTAL_MAX_CHARS - total
            if remaining <= 0:
                break
            content = await self.page_content(title, min(MEMORY_MAX_CHARS_PER_PAGE, remaining))
            if not content:
                continue
            sections.append(f"### {title.replace('Chief of Staff/', '')}\n{content}")
            total += len(content)
        self._memory_content = "## Your Memory\n\n" + "\n\n".join(sections) if sections else ""
        self._memory_expires_at = self._clock() + MEMORY_CACHE_TTL_SECONDS
        return self._memory_content

    # ── Skills ───────────────────────────────────────────────────

    async def skill_entries(self, force: bool = False) -> list[SkillEntry]:
        if not force and self._skill_entries is not None and self._skills_expires_at > self._clock():
            return self._skill_entries
        tree = await get_page_tree(self.host, title=SKILLS_PAGE_TITLE)
        self._skill_entries = build_skill_entries_from_tree(tree)
        self._skills_expires_at = self._clock() + MEMORY_CACHE_TTL_SECONDS
        return self._skill_entries

    async def skills_index(self, force: bool = False) -> str:
        return build_skill_index(await self.skill_entries(force))

    async def skills_content(self, force: bool = False) -> str:
        """Full skill bodies up to 5000 chars (snapshot command)."""
        parts = []
        used = 0
        for entry in await self.skill_entries(force):
            remaining = SKILLS_MAX_CHARS - used
            if remaining <= 0:
                break
            if len(entry.content) <= remaining:
                parts.append(entry.content)
                used += len(entry.content)
                continue
            parts.append(f"{entry.content[:max(0, remaining - 20)]}\n  …[truncated]")
            break
        return "## Available Skills\n\n" + "\n\n".join(parts) if parts else ""

    async def find_skill(self, name: str) -> SkillEntry | None:
        target = str(name or "").strip().lower()
        if not target:
            return None
        entries = await self.skill_entries()
        for entry in entries:
            if entry.title.lower() == target:
                return entry
        for entry in entries:
            if target in entry.title.lower():
                return entry
        return None

    # ── Tool handlers ────────────────────────────────────────────

    async def get_skill(self, args: dict[str, Any]) -> dict[str, Any]:
        name = str(args.get("skill_name") or args.get("name") or "").strip()
        if not name:
            raise ValidationError("skill_name is required")
        entry = await self.find_skill(name)
        if entry is None:
            available = ", ".join(e.title for e in (await self.skill_entries())[:20]) or "(none)"
            return {"error": f'Skill "{name}" not found. Available skills: {available}'}
        return {
            "skill": entry.title,
            "uid": entry.uid,
            "content": entry.content,
            "sources": [s.tool for s in entry.sources],
        }

    async def update_memory(self, args: dict[str, Any]) -> dict[str, Any]:
        page = args.get("page")
        title = resolve_memory_page_title(page)
        if not title:
            raise ValidationError(
                f'Invalid memory page: "{page}". Use memory, inbox, skills, projects, decisions, '
                "lessons or improvements."
            )
        text = str(args.get("content") or "").strip()
        if not text:
            raise ValidationError("content is required")
        action = str(args.get("action") or "append").lower()

        verdict = guard_memory_write(text, title, action, self.record_stat)
        if not verdict.allowed:
            return {"error": verdict.reason, "blocked": True, "matched_patterns": verdict.matched_patterns}

        page_uid = await ensure_page_uid(self.host, title)
        if action == "replace_children":
            return await self._replace_children(title, str(args.get("block_uid") or "").strip(), text)
        if action != "append":
            raise ValidationError(f'Unknown action "{action}". Use append or replace_children.')

        if title in DATED_LOG_PAGES and not text.startswith("[["):
            text = f"[[{self.host.date_to_page_title(self._now())}]] {text}"
        uid = await create_block(self.host, page_uid, text, "last")
        self._invalidate_for(title)
        return {"success": True, "action": "appended", "page": title, "uid": uid}

    async def _replace_children(self, title: str, block_uid: str, text: str) -> dict[str, Any]:
        if not block_uid:
            raise ValidationError("block_uid is required for replace_children")
        if title != SKILLS_PAGE_TITLE:
            raise ValidationError("replace_children is only supported on the skills page.")
        skills_tree = await get_page_tree(self.host, title=SKILLS_PAGE_TITLE)
        target = next((c for c in skills_tree["children"] if c["uid"] == block_uid), None)
        if target is None:
            raise ValidationError(f"UID {block_uid} is not a skill on the skills page.")

        normalised = text.replace("\\n", "\n").replace("\\t", "\t")
        if normalised.count("\n") < 2 and len(re.findall(r"\s+-\s+\S", normalised)) >= 2:
            normalised = re.sub(r"\s+-\s+", "\n- ", normalised)
        lines = normalised.split("\n")
        first = re.sub(r"^[-#*\s]+", "", lines[0]).strip().lower()
        skill_title = target["text"].strip().lower()
        if first in (skill_title, f"{skill_title} skill", f"{skill_title}:", f"{skill_title} -"):
            normalised = "\n".join(lines[1:]).strip()

        existing = (await get_block_tree(self.host, block_uid) or {}).get("children") or []
        for child in existing:
            await with_write_retry(lambda uid=child["uid"]: self.host.delete_block(uid))
        nodes = parse_markdown_to_block_tree(normalised)
        for node in nodes:
            await create_block_tree(self.host, block_uid, node)
        self.invalidate_skills()
        return {
            "success": True, "action": "replace_children", "page": title,
            "block_uid": block_uid, "deleted": len(existing), "created": len(nodes),
        }

    def _invalidate_for(self, title: str) -> None:
        self.invalidate_memory()
        if title == SKILLS_PAGE_TITLE:
            self.invalidate_skills()

    # ── Bootstrap ────────────────────────────────────────────────

    async def bootstrap_memory_pages(self) -> int:
        created = 0
        date_link = f"[[{self.host.date_to_page_title(self._now())}]]"
        for title, lines in STARTER_MEMORY_PAGES.items():
            if await self.host.get_page_uid(title):
                continue
            page_uid = await ensure_page_uid(self.host, title)
            for index, line in enumerate(lines):
                await create_block(self.host, page_uid, line.format(date=date_link), index)
            created += 1
        if created:
            self.invalidate_memory()
            logger.info("Bootstrapped %d memory page(s)", created)
        return created

    async def bootstrap_skills_page(self) -> bool:
        if await self.host.get_page_uid(SKILLS_PAGE_TITLE):
            return False
        page_uid = await ensure_page_uid(self.host, SKILLS_PAGE_TITLE)
        for index, (name, steps) in enumerate(STARTER_SKILLS):
            parent_uid = await create_block(self.host, page_uid, name, index)
            for step_index, step in enumerate(steps):
                await create_block(self.host, parent_uid, step, step_index)
        self.invalidate_skills()
        logger.info("Bootstrapped skills page with %d starter skills", len(STARTER_SKILLS))
        return True

    # ── Tool definitions ─────────────────────────────────────────

    def tools(self) -> list[Tool]:
        return [
            Tool(
                name="cos_update_memory",
                description=(
                    "Save information to the user's Chief of Staff memory pages. Use append to add a new "
                    "block; use replace_children with block_uid to rewrite a skill's instructions."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "page": {
                            "type": "string",
                            "description": "memory, inbox, skills, projects, decisions, lessons or improvements",
                        },
                        "action": {"type": "string", "enum": ["append", "replace_children"]},
                        "content": {"type": "string", "description": "Text (or markdown list) to write."},
                        "block_uid": {"type": "string", "description": "Skill block UID for replace_children."},
                    },
                    "required": ["page", "content"],
                },
                handler=self.update_memory,
                is_mutating=True,
                origin=ToolOrigin.NATIVE,
            ),
            Tool(
                name="cos_get_skill",
                description="Load a skill's full instructions and declared Sources by name.",
                input_schema={
                    "type": "object",
                    "properties": {"skill_name": {"type": "string", "description": "Skill name from the index."}},
                    "required": ["skill_name"],
                },
                handler=self.get_skill,
                is_mutating=False,
                origin=ToolOrigin.NATIVE,
            ),
        ]
