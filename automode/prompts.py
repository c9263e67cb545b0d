"""Prompt templates for agent sessions, and commit message helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Feature

TITLE_MAX_LENGTH = 60

FEATURE_PROMPT_TEMPLATE = """\
## Feature Implementation Task

**Feature ID:** {feature_id}
**Title:** {title}
**Description:** {description}
{spec_section}{images_section}"""

IMPLEMENTATION_INSTRUCTIONS = """
## Instructions

Implement this feature by:
1. First, explore the codebase to understand the existing structure
2. Plan your implementation approach
3. Write the necessary code changes
4. Add or update tests as needed{test_instruction}
5. Ensure the code follows existing patterns and conventions

When done, wrap your final summary in <summary> tags:

<summary>
## Summary: [Feature Title]

### Changes Implemented
- [List of changes made]

### Files Modified
- [List of files]

### Notes for Developer
- [Any important notes]
</summary>
"""

RESUME_PROMPT_TEMPLATE = """\
## Continuing Feature Implementation

{feature_prompt}
## Previous Context
The following is the output from a previous implementation attempt. Continue from where you left off:

{previous_context}

## Instructions
Review the previous work and continue the implementation. If the feature appears complete, verify it works correctly.
"""

FOLLOW_UP_PROMPT_TEMPLATE = """\
## Follow-up on Feature Implementation

{feature_prompt}{previous_section}
## Follow-up Instructions
{instructions}

## Task
Address the follow-up instructions above. Review the previous work and make the requested changes or fixes.
"""

ANALYSIS_PROMPT = """\
Analyze this project and provide a summary of:
1. Project structure and architecture
2. Main technologies and frameworks used
3. Key components and their responsibilities
4. Build and test commands
5. Any existing conventions or patterns

Format your response as a structured markdown document.
"""


def extract_title_from_description(description: str | None) -> str:
    """First line of the description, cut to 57 chars + "..." past 60."""
    if not description or not description.strip():
        return "Untitled Feature"
    first_line = description.strip().split("\n")[0].strip()
    if len(first_line) <= TITLE_MAX_LENGTH:
        return first_line
    return first_line[:TITLE_MAX_LENGTH - 3] + "..."


def build_commit_message(feature: Feature | None, feature_id: str, trailer: str = "") -> str:
    if feature is None:
        return f"feat: Feature {feature_id}"
    message = f"feat: {extract_title_from_description(feature.description)}"
    if trailer:
        message += f"\n\n{trailer}"
    return message


def build_feature_section(feature: Feature) -> str:
    """Feature header: id, title, description, spec and attached images."""
    spec_section = ""
    if feature.spec:
        spec_section = f"\n**Specification:**\n{feature.spec}\n"

    images_section = ""
    if feature.image_paths:
        images_list = "\n".join(
            f"   {i + 1}. {img.filename} ({img.mime_type})\n      Path: {img.path}"
            for i, img in enumerate(feature.image_paths)
        )
        images_section = (
            f"\n**Context Images Attached:**\n"
            f"The user has attached {len(feature.image_paths)} image(s) for context. "
            f"They are provided visually and as files you can read:\n\n"
            f"{images_list}\n\n"
            f"You can use the Read tool to view these images at any time during implementation.\n"
        )

    return FEATURE_PROMPT_TEMPLATE.format(
        feature_id=feature.id,
        title=extract_title_from_description(feature.description),
        description=feature.description,
        spec_section=spec_section,
        images_section=images_section,
    )


def build_feature_prompt(feature: Feature) -> str:
    """Build the full prompt for a fresh implementation session."""
    test_instruction = (
        " (this feature is verified manually; do not add automated tests)"
        if feature.skip_tests else ""
    )
    return build_feature_section(feature) + IMPLEMENTATION_INSTRUCTIONS.format(
        test_instruction=test_instruction,
    )


def build_resume_prompt(feature: Feature, previous_context: str) -> str:
    return RESUME_PROMPT_TEMPLATE.format(
        feature_prompt=build_feature_prompt(feature),
        previous_context=previous_context,
    )


def build_follow_up_prompt(feature: Feature, previous_context: str, instructions: str) -> str:
    previous_section = ""
    if previous_context:
        previous_section = (
            "\n## Previous Agent Work\n"
            "The following is the output from the previous implementation attempt:\n\n"
            f"{previous_context}\n"
        )
    return FOLLOW_UP_PROMPT_TEMPLATE.format(
        feature_prompt=build_feature_section(feature),
        previous_section=previous_section,
        instructions=instructions,
    )
