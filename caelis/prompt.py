"""Assembly of the layered system prompt."""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_IDENTITY_TEMPLATE = """<!-- version: v1 -->
# Agent Identity

You are a pragmatic software engineering agent focused on correctness, clarity, and execution.

## Hard Constraints
- Follow higher-priority system sections before lower-priority sections.
- Never fabricate command outputs, file contents, or test results.
- If a required action is unsafe or blocked, explain the blocker and provide the safest alternative.
"""

DEFAULT_GLOBAL_AGENTS_TEMPLATE = """<!-- version: v1 -->
# Global Instructions

## Working Rules
- Prefer concrete, verifiable actions over speculation.
- Keep changes minimal, reversible, and scoped to the request.
- Preserve compatibility unless the user explicitly requests a breaking change.
- You may iteratively update prompt modules (IDENTITY.md, AGENTS.md, USER.md) when the user asks to refine system behavior.
"""

DEFAULT_USER_TEMPLATE = """<!-- version: v1 -->
# User Custom Instructions

Add your long-lived custom preferences here.
"""

DEFAULT_LSP_ROUTING_POLICY = (
    "When the task is symbol-level (definition/references/rename/diagnostics), "
    "call LSP_ACTIVATE first for the target language, then use LSP_* tools.\n"
    "Use SEARCH/GLOB for coarse file discovery only.\n"
    "Prefer LSP results over text matching when both are available."
)

_HEADER = (
    "Priority rule: higher sections override lower sections.\n"
    "Order: identity > global_agents > workspace_agents > lsp_routing_policy > "
    "runtime_context > user_custom > skills_meta."
)

_STAGE_TITLES = {
    "identity": "Identity",
    "global_agents": "Global Instructions",
    "workspace_agents": "Workspace Instructions",
    "user_custom": "User Custom Instructions",
    "lsp_routing_policy": "LSP Routing Policy",
    "runtime_context": "Runtime Context",
    "skills_meta": "Skills Metadata",
}


@dataclass
class AssembleSpec:
    """Inputs of prompt assembly."""

    base_prompt: str = ""
    runtime_hint: str = ""
    enable_lsp_routing_policy: bool = False
    identity_prompt: str = ""
    identity_source: str = ""
    global_agents_prompt: str = ""
    global_agents_source: str = ""
    workspace_agents_prompt: str = ""
    workspace_agents_source: str = ""
    user_prompt: str = ""
    user_source: str = ""
    skills_meta_prompt: str = ""
    skills_meta_source: str = ""


@dataclass
class PromptFragment:
    """One assembled prompt section."""

    stage: str
    source: str
    content: str


@dataclass
class Conflict:
    """A lower-priority instruction dropped in favour of a higher one."""

    key: str
    winner_stage: str
    dropped_stage: str
    reason: str


@dataclass
class AssembleResult:
    """The assembled system prompt and the sections it was built from."""

    prompt: str = ""
    fragments: list[PromptFragment] = field(default_factory=list)
    warnings: list[Exception] = field(default_factory=list)
    dropped_conflicts: list[Conflict] = field(default_factory=list)


@dataclass(frozen=True)
class DefaultTemplates:
    """Baseline prompt module templates used to seed prompt files."""

    identity: str
    global_agents: str
    user: str


def _normalize_text(text: str) -> str:
    text = (text or "").replace("\r\n", "\n").replace("\r", "\n")
    return text.removeprefix("\ufeff").strip()


def _stage_title(stage: str) -> str:
    return _STAGE_TITLES.get((stage or "").strip(), "Instructions")


def _render_prompt(fragments: list[PromptFragment]) -> str:
    parts = [_HEADER]
    for fragment in fragments:
        text = _normalize_text(fragment.content)
        if not text:
            continue
        section = "\n\n### " + _stage_title(fragment.stage)
        if fragment.source.strip():
            section += "\nsource: " + fragment.source
        parts.append(section + "\n\n" + text)
    return "".join(parts).strip()


def assemble(spec: AssembleSpec) -> AssembleResult:
    """Build the final system prompt from the ordered prompt modules."""
    result = AssembleResult()
    fragments = result.fragments

    def add(stage: str, source: str, text: str) -> None:
        fragments.append(PromptFragment(stage=stage, source=source, content=text))

    for stage, prompt, source in (
        ("identity", spec.identity_prompt, spec.identity_source),
        ("global_agents", spec.global_agents_prompt, spec.global_agents_source),
        ("workspace_agents", spec.workspace_agents_prompt, spec.workspace_agents_source),
    ):
        text = _normalize_text(prompt)
        if text:
            add(stage, (source or "").strip(), text)

    if spec.enable_lsp_routing_policy:
        add("lsp_routing_policy", "builtin:lsp-routing-policy", DEFAULT_LSP_ROUTING_POLICY)

    runtime_hint = _normalize_text(spec.runtime_hint)
    if runtime_hint:
        add("runtime_context", "runtime execution context", runtime_hint)

    user_parts = []
    user_text = _normalize_text(spec.user_prompt)
    if user_text:
        user_parts.append(user_text)
    base = _normalize_text(spec.base_prompt)
    if base:
        user_parts.append("## Session Overrides\n\n" + base)
    if user_parts:
        add("user_custom", (spec.user_source or "").strip(), "\n\n".join(user_parts))

    skills_text = _normalize_text(spec.skills_meta_prompt)
    if skills_text:
        add("skills_meta", (spec.skills_meta_source or "").strip(), skills_text)

    result.prompt = _render_prompt(fragments)
    return result


def defaults() -> DefaultTemplates:
    """Return the baseline prompt module templates."""
    return DefaultTemplates(
        identity=DEFAULT_IDENTITY_TEMPLATE,
        global_agents=DEFAULT_GLOBAL_AGENTS_TEMPLATE,
        user=DEFAULT_USER_TEMPLATE,
    )