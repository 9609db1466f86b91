"""Interactive prompts. Everything here only collects answers; policy lives elsewhere."""

from __future__ import annotations

from typing import Callable

from . import console
from .orchestration import ChoiceProvider, PortBinding
from .ports import PortInspection

InputFn = Callable[[str], str]


def _read(prompt: str, input_fn: InputFn) -> str:
    try:
        return input_fn(prompt)
    except EOFError:
        return ""


def ask_conflict_choice(binding: PortBinding, inspection: PortInspection, *, input_fn: InputFn = input) -> str:
    """Show who holds the port and return the raw answer (1/2/3)."""
    port = inspection.port
    console.warn(f"{binding.service_name}: port {port} is in use:")
    if inspection.owner_description:
        print(inspection.owner_description)
    print("")
    print("Options:")
    print(f"1) Kill the processes using port {port}")
    print("2) Use a different port")
    print("3) Exit and handle manually")
    return _read("Choose option (1/2/3): ", input_fn).strip()


def conflict_prompt(input_fn: InputFn = input) -> ChoiceProvider:
    def choose(binding: PortBinding, inspection: PortInspection) -> str:
        return ask_conflict_choice(binding, inspection, input_fn=input_fn)

    return choose


def confirm(question: str, *, default: bool = False, assume_yes: bool = False, input_fn: InputFn = input) -> bool:
    if assume_yes:
        return True
    suffix = "(Y/n)" if default else "(y/N)"
    answer = _read(f"{question} {suffix}: ", input_fn).strip().lower()
    if not answer:
        return default
    return answer in ("y", "yes")


def ask(question: str, *, input_fn: InputFn = input) -> str:
    return _read(f"{question}: ", input_fn).strip()
