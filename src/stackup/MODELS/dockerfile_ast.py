"""
Models for a parsed build recipe.
"""
from typing import List
from pydantic import BaseModel


class Instruction(BaseModel):
    """
    Represents a single instruction in a Dockerfile.
    """
    instruction: str
    arguments: List[str]
    raw: str
    line: int = 0
    exec_form: bool = False
