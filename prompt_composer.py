"""
Prompt Composer - build the system prompt a worker is launched with.

Agent definitions are markdown files with optional YAML frontmatter:

    ---
    skills:
      - code-review
    expertise:
      - python
    ---
    You are a careful reviewer...

The composed prompt is, in this order:
    1. Environment header (working directory, timestamp)
    2. One block per skill, in listed order
    3. One block per expertise file, in listed order
    4. The agent body, verbatim

Environment context comes first and the agent's own instructions last, so
the body has the final word over anything injected before it.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import yaml

from errors import DefinitionNotFound
from path_resolver import resolve_within, validate_agent_name
from config import Config
from logger import get_logger

log = get_logger("prompt_composer")

FRONTMATTER_PATTERN = re.compile(r'\A---\r?\n(.*?)\r?\n---(?:\r?\n|\Z)(.*)\Z', re.DOTALL)

SECTION_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class AgentDefinition:
    """Parsed agent definition file."""
    skills: Tuple[str, ...] = ()
    expertise: Tuple[str, ...] = ()
    body: str = ""


@dataclass(frozen=True)
class ComposedPrompt:
    """
    Initialization payload for one worker spawn.

    Attributes:
        agent_name: Agent this prompt was composed for
        sections: Header, skill blocks, expertise blocks, body - in that order
        skills_loaded: Skill names that were found and injected
        expertise_loaded: Expertise names that were found and injected
    """
    agent_name: str
    sections: Tuple[str, ...]
    skills_loaded: Tuple[str, ...] = field(default=())
    expertise_loaded: Tuple[str, ...] = field(default=())

    @property
    def header(self) -> str:
        return self.sections[0]

    @property
    def body(self) -> str:
        """The agent's own text, exactly as written in its definition"""
        return self.sections[-1]

    def render(self) -> str:
        """Join sections with a blank line between each"""
        return SECTION_SEPARATOR.join(self.sections)

    def __len__(self) -> int:
        return len(self.render())


def _name_list(value, field_name: str) -> List[str]:
    """Normalize a frontmatter list; a bare string counts as one entry"""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        log.warning(f"Ignoring frontmatter '{field_name}': expected a list, got {type(value).__name__}")
        return []

    names = []
    for item in value:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            names.append(text)
    return names


def parse_definition(content: str) -> AgentDefinition:
    """
    Split an agent definition into its skill/expertise references and body.

    Without a frontmatter block the whole file is the body. Broken YAML is
    logged and treated as empty metadata; the body is kept either way.
    """
    match = FRONTMATTER_PATTERN.match(content)
    if not match:
        return AgentDefinition(body=content)

    yaml_block, body = match.groups()

    try:
        metadata = yaml.safe_load(yaml_block) or {}
    except yaml.YAMLError as e:
        log.warning(f"Invalid frontmatter YAML, ignoring metadata: {e}")
        metadata = {}

    if not isinstance(metadata, dict):
        log.warning(f"Frontmatter is not a mapping ({type(metadata).__name__}), ignoring metadata")
        metadata = {}

    # Keys are matched case-insensitively ("Skills:" works too)
    lowered = {str(k).lower(): v for k, v in metadata.items()}

    return AgentDefinition(
        skills=tuple(_name_list(lowered.get("skills"), "skills")),
        expertise=tuple(_name_list(lowered.get("expertise"), "expertise")),
        body=body,
    )


class PromptComposer:
    """
    Compose worker prompts from agent, skill and expertise files.

    Nothing is cached: every spawn reads the files again so edits take
    effect on the next respawn.
    """

    def __init__(
        self,
        agents_dir: Path,
        skills_dir: Path,
        expertise_dir: Path,
        skill_filenames: Tuple[str, ...] = Config.SKILL_FILENAMES,
        working_dir: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.agents_dir = Path(agents_dir)
        self.skills_dir = Path(skills_dir)
        self.expertise_dir = Path(expertise_dir)
        self.skill_filenames = skill_filenames
        self.working_dir = working_dir
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(cls, config: Config) -> "PromptComposer":
        return cls(
            agents_dir=config.agents_dir,
            skills_dir=config.skills_dir,
            expertise_dir=config.expertise_dir,
            skill_filenames=config.SKILL_FILENAMES,
        )

    def definition_path(self, agent_name: str) -> Path:
        """Validated path of an agent definition (may not exist)"""
        validate_agent_name(agent_name)
        return resolve_within(self.agents_dir, agent_name, ".md")

    def load_definition(self, agent_name: str) -> AgentDefinition:
        """Read and parse an agent definition, raising DefinitionNotFound if absent"""
        agent_path = self.definition_path(agent_name)
        if not agent_path.is_file():
            raise DefinitionNotFound(f"Agent not found: {agent_path}")
        return parse_definition(agent_path.read_text(encoding="utf-8"))

    def load_skill(self, skill_name: str) -> Optional[str]:
        """Skill text, or None when no skill file exists"""
        skill_dir = resolve_within(self.skills_dir, skill_name)
        for filename in self.skill_filenames:
            skill_path = resolve_within(self.skills_dir, f"{skill_name}/{filename}")
            if skill_path.is_file():
                return skill_path.read_text(encoding="utf-8")

        log.warning(f"Skill not found: {skill_dir}")
        return None

    def load_expertise(self, expertise_name: str) -> Optional[str]:
        """Expertise text, or None when the file does not exist"""
        expertise_path = resolve_within(self.expertise_dir, expertise_name, ".md")
        if not expertise_path.is_file():
            log.warning(f"Expertise not found: {expertise_path}")
            return None
        return expertise_path.read_text(encoding="utf-8")

    def environment_header(self) -> str:
        working_dir = self.working_dir or Path.cwd()
        return (
            "# Environment\n"
            f"Working directory: {working_dir}\n"
            f"Date: {self._clock().isoformat()}\n"
            "---"
        )

    def compose(self, agent_name: str) -> ComposedPrompt:
        """
        Build the full prompt for an agent.

        Raises:
            InvalidAgentName / PathTraversal: unsafe agent, skill or expertise name
            DefinitionNotFound: no <agents_dir>/<agent_name>.md
        """
        definition = self.load_definition(agent_name)

        sections = [self.environment_header()]
        skills_loaded = []
        expertise_loaded = []

        for skill_name in definition.skills:
            content = self.load_skill(skill_name)
            if content is not None:
                sections.append(f"# Skill: {skill_name}\n{content.rstrip()}")
                skills_loaded.append(skill_name)

        for expertise_name in definition.expertise:
            content = self.load_expertise(expertise_name)
            if content is not None:
                sections.append(f"# Expertise: {expertise_name}\n{content.rstrip()}")
                expertise_loaded.append(expertise_name)

        sections.append(definition.body)

        prompt = ComposedPrompt(
            agent_name=agent_name,
            sections=tuple(sections),
            skills_loaded=tuple(skills_loaded),
            expertise_loaded=tuple(expertise_loaded),
        )
        log.info(
            f"Composed prompt for {agent_name}: {len(prompt):,} chars, "
            f"skills={list(skills_loaded)}, expertise={list(expertise_loaded)}"
        )
        return prompt
