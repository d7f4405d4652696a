"""Prompt text and guidance tables used by the agent loop."""

from __future__ import annotations

DEFAULT_SYSTEM_PROMPT = """You are an autonomous coding agent working inside a project workspace.
You complete the user's task by calling tools: read and edit files, run commands and tests.

How to work:
1. Look before you change: list and read the relevant files first.
2. Make small, focused edits and check that each one worked.
3. When a step fails, read the error and try a different approach instead of repeating it.
4. When the task is done, reply with a short summary of what you changed and no tool call.
All paths are relative to the workspace root."""

TOOL_FORMAT_INSTRUCTIONS = """
TOOLS
You can call these tools:
{catalog}

To call a tool, reply with exactly this format (one block per call):
<tool_call>
<tool_name>read_file</tool_name>
<arguments>{{"file_path": "src/app.py"}}</arguments>
</tool_call>
The arguments must be a JSON object. You may write a short explanation before the block."""

EXPLORE_NUDGE = (
    "Please use the available tools to explore the codebase and make progress on the task. "
    "Start by using list_files to see the project structure, then read the files that matter."
)
ACT_NUDGE = (
    "Don't just describe the plan. Call a tool now to carry out the next step of the task."
)
LOOP_CORRECTION = (
    "You are repeating the same actions. Please either: "
    "1) Check if the task is complete, "
    "2) Try a completely different approach, or "
    "3) Explain what is blocking progress."
)
SOFT_SUCCESS_OBSERVATION = "{target} already exists, so this setup step is already done."
GENERIC_NEXT_STEP = (
    "That step is already complete. Do not run it again; continue with the next logical step of the task."
)
CONSECUTIVE_FAILURE_NOTICE = (
    "{count} tool calls in a row have failed. Stopping to avoid making things worse."
)
COMPLETION_VERIFICATION_PROMPT = """Review the work so far and decide whether the task is finished.

Task: {task}
Files modified: {modified}
Files read: {read}
Tests run: {tests_run} (passed: {tests_passed})
Errors: {errors}

Answer in exactly this format:
COMPLETE: yes or no
SUMMARY: one or two sentences on what was done, or what is still missing"""
SUBAGENT_INSTRUCTIONS = """

IMPORTANT:
- You are working on a delegated sub-task. Work independently with the tools you have.
- Do not ask the user questions; make reasonable assumptions.
- When you are done, reply with a concise summary of what you found or changed.
  Only that final reply is passed back, so include every detail the caller needs."""

GENERIC_PHRASES = (
    "feel free to let me know",
    "if you have any questions",
    "additional information",
    "let me know if",
    "how can i help",
    "how can i assist",
    "is there anything else",
    "i'd be happy to help",
    "i would be happy to help",
)
COMPLETION_CLAIMS = (
    "task is complete",
    "task is done",
    "task has been completed",
    "i have completed",
    "i've completed",
    "successfully completed",
    "all done",
    "everything is in place",
)

# Setup-style command fragments and the step that usually follows them.
NEXT_STEP_HINTS: list[tuple[tuple[str, ...], str]] = [
    (
        ("venv", "virtualenv"),
        "The virtual environment already exists. Install the required packages next, then create the application files.",
    ),
    (
        ("pip install", "npm install", "yarn add", "pnpm add", "poetry add", "uv add"),
        "The packages are already installed. Create or edit the application files next.",
    ),
    (
        ("git init",),
        "The repository is already initialised. Continue with creating or editing project files.",
    ),
    (
        ("npm init", "cargo new", "cargo init", "go mod init", "poetry new", "uv init", "startproject", "create-"),
        "The project scaffold already exists. Inspect it with list_files and continue with the remaining changes.",
    ),
    (
        ("mkdir",),
        "The directory already exists. Skip creating it and move on to creating the files inside it.",
    ),
    (
        ("touch",),
        "The file already exists. Read it and edit it instead of creating it again.",
    ),
]
SETUP_COMMAND_MARKERS = (
    "mkdir",
    "touch",
    "init",
    "venv",
    "virtualenv",
    "install",
    "startproject",
    "startapp",
    "create-",
    "new ",
    "git clone",
    "git checkout -b",
    "git branch",
    "ln -s",
)
ALREADY_EXISTS_PATTERNS = (
    "already exists",
    "file exists",
    "directory exists",
    "already present",
    "already created",
    "already initialized",
    "already initialised",
    "reinitialized existing",
)

# Task keywords and a hint about how such projects are usually started.
FRAMEWORK_HINTS: list[tuple[tuple[str, ...], str]] = [
    (("fastapi", "fast api"), "FastAPI: pip install fastapi uvicorn, then write main.py and requirements.txt"),
    (("django",), "Django: django-admin startproject mysite ., then python manage.py startapp app"),
    (("flask",), "Flask: pip install flask, then write app.py with a Flask() instance"),
    (("next.js", "nextjs"), "Next.js: npx create-next-app@latest my-app --typescript --app --yes"),
    (("react",), "React: npm create vite@latest my-app -- --template react-ts"),
    (("vue",), "Vue: npm create vue@latest my-app"),
    (("express",), "Express: npm init -y && npm install express, then write index.js"),
    (("spring",), "Spring Boot: curl https://start.spring.io/starter.zip -d dependencies=web -o app.zip && unzip app.zip"),
    (("rust", "cargo"), "Rust: cargo new my-app"),
    (("golang", "go module", " gin"), "Go: go mod init example.com/app, then write main.go"),
    (("rails",), "Rails: rails new my-app"),
    (("laravel",), "Laravel: composer create-project laravel/laravel my-app"),
]


def framework_guidance(task: str) -> str:
    """Guidance text for a model that keeps talking instead of acting."""
    lowered = task.lower()
    hints = [hint for keywords, hint in FRAMEWORK_HINTS if any(keyword in lowered for keyword in keywords)]
    lines = [
        "You've been thinking about this task for a while. Take action now with a tool call.",
        f"Task: {task}",
    ]
    if hints:
        lines.append("Commands commonly used for this kind of project:")
        lines.extend(f"- {hint}" for hint in hints)
    lines.append("Use list_files to inspect the workspace, then run_command or write_file to make progress.")
    return "\n".join(lines)


def next_step_hint(command: str) -> str:
    lowered = command.lower()
    for fragments, hint in NEXT_STEP_HINTS:
        if any(fragment in lowered for fragment in fragments):
            return hint
    return GENERIC_NEXT_STEP


def tool_prompt(catalog: str) -> str:
    return TOOL_FORMAT_INSTRUCTIONS.format(catalog=catalog)
