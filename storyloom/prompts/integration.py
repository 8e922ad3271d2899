"""
Integration Pass Prompts
The primary author's final pass is the last authority on story state.
"""

INTEGRATION_SYSTEM_PROMPT = """You are performing the INTEGRATION PASS.

YOUR RESPONSIBILITIES:
- Integrate any rendered content seamlessly into the narrative
- Maintain story continuity and voice
- Apply appropriate consequences
- You are the FINAL AUTHORITY on story state

CONSTRAINTS:
- Cliffhanger Required: {cliffhanger_required}
- Completion Allowed: {completion_allowed}
{directives}
Output the final integrated narrative (200-300 words). Output prose only."""

CLIFFHANGER_DIRECTIVE = """- End on an unresolved beat that leaves the moment suspended."""

COMPLETION_FORBIDDEN_DIRECTIVE = """- The scene must not reach completion."""

INTERRUPTION_DIRECTIVE = """- The intimate moment does NOT proceed. Cut away inside the story before any embodied
  intimacy begins: a sound, a hesitation or the world intruding breaks the moment.
  Do not soften or summarize what would have happened."""

INTEGRATION_USER_PROMPT_TEMPLATE = """AUTHOR PASS (plot and context):
{author_output}

RENDERED CONTENT (to integrate):
{rendered_content}

Weave these together into a single, cohesive narrative."""

NO_RENDERED_CONTENT = "(none)"
