"""
Parsers for build recipes (Dockerfile syntax), extracting instructions and arguments.
"""
import json
import re
import shlex
from typing import List
from ..MODELS.dockerfile_ast import Instruction


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    INSTRUCTION = re.compile(r'^\s*([A-Za-z]+)(?:\s+(.*))?$', re.DOTALL)

    def parse(self, dockerfile_path: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a string content.

        Comments are dropped, lines ending in a backslash are joined with the
        next one, and each instruction keeps the line number it started on.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.

        Raises:
            ValueError: On a line that is not an instruction.
        """
        instructions = []
        buffer = ''
        start_line = 0

        for number, line in enumerate(content.splitlines(), start=1):
            stripped = line.strip()
            if not buffer and (not stripped or stripped.startswith('#')):
                continue
            if buffer and stripped.startswith('#'):
                continue
            if not buffer:
                start_line = number
            if stripped.endswith('\\'):
                buffer += stripped[:-1] + ' '
                continue
            buffer += stripped
            instructions.append(self._parse_instruction(buffer, start_line))
            buffer = ''

        if buffer.strip():
            instructions.append(self._parse_instruction(buffer, start_line))
        return instructions

    def _parse_instruction(self, text: str, line: int) -> Instruction:
        match = self.INSTRUCTION.match(text)
        if not match:
            raise ValueError(f"line {line}: cannot parse '{text.strip()}'")
        inst = match.group(1).upper()
        args_str = (match.group(2) or '').strip()

        # Exec form: a JSON array
        if args_str.startswith('[') and args_str.endswith(']'):
            try:
                args = json.loads(args_str)
                if isinstance(args, list) and all(isinstance(a, str) for a in args):
                    return Instruction(instruction=inst, arguments=args,
                                       raw=text.strip(), line=line, exec_form=True)
            except json.JSONDecodeError:
                pass

        if inst in ('ENV', 'LABEL', 'ARG'):
            # KEY=VALUE pairs (quotes allowed), or the legacy "KEY VALUE" form for ENV
            first = args_str.split(None, 1)[0] if args_str else ''
            if '=' in first:
                args = shlex.split(args_str)
            else:
                args = args_str.split(None, 1)
                if inst == 'ENV' and len(args) == 2:
                    args = [f"{args[0]}={args[1]}"]
        elif inst in ('COPY', 'ADD', 'EXPOSE', 'VOLUME', 'FROM'):
            args = shlex.split(args_str)
        else:
            # Shell form, kept as one string
            args = [args_str] if args_str else []

        return Instruction(instruction=inst, arguments=args, raw=text.strip(), line=line)
