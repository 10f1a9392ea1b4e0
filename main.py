#!/usr/bin/env python3
"""
Agent Pool - command line entry point

    agent-pool invoke reviewer "Review foo.py"
    agent-pool compose reviewer
    agent-pool gate < request.json
    agent-pool check-config
"""

import argparse
import asyncio
import json
import sys

from config import Config
from agent_pool import AgentPool
from prompt_composer import PromptComposer
from tools import ToolRegistry
from pool_tools import register_pool_tools
import spawn_gate
from errors import AgentPoolError
from logger import get_logger

log = get_logger("main")


async def run_invoke(config: Config, agent: str, task: str) -> int:
    """Spawn, run one task, shut down. Exit code 1 on failure."""
    pool = AgentPool(config)
    registry = register_pool_tools(ToolRegistry(), pool)

    try:
        result = await registry.execute("invoke", {"agent": agent, "task": task})
    finally:
        await pool.shutdown()

    print(result.text)
    return 1 if result.is_error else 0


def run_compose(config: Config, agent: str) -> int:
    """Print the prompt a worker for this agent would start with"""
    try:
        prompt = PromptComposer.from_config(config).compose(agent)
    except AgentPoolError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(prompt.render())
    return 0


def run_gate(config: Config) -> int:
    """Read a spawn request on stdin, print the decision. Always exits 0."""
    try:
        decision = spawn_gate.evaluate_raw(sys.stdin.read(), config.agents_dir)
    except Exception as e:
        log.error(f"Gate error: {e}", exc_info=True)
        decision = spawn_gate.ALLOW
    print(decision.to_json())
    return 0


def run_check_config(config: Config) -> int:
    problems = config.validate()
    summary = {
        "agents_dir": str(config.agents_dir),
        "skills_dir": str(config.skills_dir),
        "expertise_dir": str(config.expertise_dir),
        "task_timeout_ms": config.task_timeout_ms,
        "worker_binary": config.worker_binary,
        "problems": problems,
    }
    print(json.dumps(summary, indent=2))
    return 1 if problems else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent Pool - long-lived agent worker processes")
    parser.add_argument('--agents-dir', help='Override AGENTS_DIR')
    parser.add_argument('--skills-dir', help='Override SKILLS_DIR')
    parser.add_argument('--expertise-dir', help='Override EXPERTISE_DIR')
    parser.add_argument('--worker', help='Override CLAUDE_CLI (worker executable)')

    sub = parser.add_subparsers(dest='command', required=True)

    invoke = sub.add_parser('invoke', help='Run one task on an agent')
    invoke.add_argument('agent')
    invoke.add_argument('task')
    invoke.add_argument('--timeout-ms', type=int, help='Override TASK_TIMEOUT_MS')

    compose = sub.add_parser('compose', help='Print the composed prompt for an agent')
    compose.add_argument('agent')

    sub.add_parser('gate', help='Decide on a spawn request read from stdin')
    sub.add_parser('check-config', help='Validate configuration and exit')

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    config = Config(
        agents_dir=args.agents_dir,
        skills_dir=args.skills_dir,
        expertise_dir=args.expertise_dir,
        worker_binary=args.worker,
        task_timeout_ms=getattr(args, "timeout_ms", None),
    )

    if args.command == 'gate':
        return run_gate(config)
    if args.command == 'check-config':
        return run_check_config(config)
    if args.command == 'compose':
        return run_compose(config, args.agent)

    # invoke
    problems = config.validate()
    if problems:
        for problem in problems:
            print(f"Config error: {problem}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(run_invoke(config, args.agent, args.task))
    except KeyboardInterrupt:
        print("\nInterrupted - agent pool shut down", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
