"""
Command-block protocol between an external text generator and the executor.

The generator is told (AGENT_SYSTEM_PROMPT) to wrap every command it wants run
in [EXECUTE]...[/EXECUTE]. There is no escaping: a marker appearing inside a
command ends the block early.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from shellmux.models import LOCAL_TARGET, ExecResult

EXECUTE_OPEN = "[EXECUTE]"
EXECUTE_CLOSE = "[/EXECUTE]"
COMMAND_BLOCK = re.compile(re.escape(EXECUTE_OPEN) + r"(.*?)" + re.escape(EXECUTE_CLOSE), re.DOTALL)

AGENT_SYSTEM_PROMPT = f"""You are a terminal assistant that helps the user run commands and manage systems.

When the user asks for something to be done you should:
1. Work out what the user needs
2. Produce the commands required
3. Mark each command for execution with the {EXECUTE_OPEN} marker

Command format:
{EXECUTE_OPEN}command{EXECUTE_CLOSE}

For example:
- The user says "list the files in the current directory"; you answer:
  Listing the current directory:
  {EXECUTE_OPEN}ls -la{EXECUTE_CLOSE}

- The user says "show memory usage"; you answer:
  Checking memory usage:
  {EXECUTE_OPEN}free -h{EXECUTE_CLOSE}
  or on macOS:
  {EXECUTE_OPEN}vm_stat{EXECUTE_CLOSE}

Notes:
- Warn the user before anything destructive (such as rm -rf /)
- Several commands may be executed in one reply
- After the commands run, analyse the results and give advice"""

Message = Dict[str, str]
Generate = Callable[[List[Message]], str]


def extract_commands(text: str) -> List[str]:
    if not text:
        return []
    commands = []
    for match in COMMAND_BLOCK.finditer(text):
        command = match.group(1).strip()
        if command:
            commands.append(command)
    return commands


def run_command_blocks(
    text: str,
    executor,
    target: str = LOCAL_TARGET,
    timeout_ms: Optional[int] = None,
) -> List[ExecResult]:
    """Run every extracted command one after another; results keep submission order."""
    results = []
    for command in extract_commands(text):
        results.append(executor.run(target, command, timeout_ms).result())
    return results


@dataclass
class AgentTurn:
    reply: str
    results: List[ExecResult] = field(default_factory=list)


class AgentConversation:
    def __init__(
        self,
        generate: Generate,
        executor,
        target: str = LOCAL_TARGET,
        system_prompt: str = AGENT_SYSTEM_PROMPT,
        timeout_ms: Optional[int] = None,
    ):
        self.generate = generate
        self.executor = executor
        self.target = target
        self.system_prompt = system_prompt
        self.timeout_ms = timeout_ms
        self.history: List[Message] = []

    def messages_for(self, user_text: str) -> List[Message]:
        return [{"role": "system", "content": self.system_prompt}, *self.history, {"role": "user", "content": user_text}]

    def ask(self, user_text: str) -> AgentTurn:
        user_text = user_text.strip()
        if not user_text:
            raise ValueError("message is empty")
        reply = self.generate(self.messages_for(user_text))
        # command results are shown to the user, not fed back to the model
        self.history.append({"role": "user", "content": user_text})
        self.history.append({"role": "assistant", "content": reply})
        results = run_command_blocks(reply, self.executor, self.target, self.timeout_ms)
        return AgentTurn(reply=reply, results=results)

    def reset(self) -> None:
        self.history.clear()
