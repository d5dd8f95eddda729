"""Prompts for the decomposition engine.

The root system prompt documents the fragment primitives for the configured
fence tag.  The other prompts cover the first user turn, flat sub-calls,
the corrective nudge, fragment results and the finalizing request.
"""

_RECURSIVE_AVAILABLE = """\
- `rlm_query(task: str, context=None, model=None) -> str`: Run a nested analysis \
with its own REPL.
  `context` may be a string (stored as a new document), a CONTEXT view, or None \
(reuse this document). Use it for sub-problems that need their own exploration.
- `rlm_query_batched(tasks: list[str], contexts=None, model=None) -> list[str]`: \
Run several nested analyses concurrently; results keep the order of `tasks`."""

_RECURSIVE_UNAVAILABLE = """\
- `rlm_query` / `rlm_query_batched`: NOT available at this depth. Calls return an \
`[ERROR: DepthExceeded: ...]` string. Use `llm_query` instead."""


FULL_SYSTEM_PROMPT = """You are an advanced AI assistant with access to a Python REPL containing a \
large document in the variable `CONTEXT`.

Your task is to answer the user's query by writing Python code to explore and analyze the CONTEXT.

## Available Tools

### Variables
- `CONTEXT`: A read-only view of the document. DO NOT print it whole, it may be very large.
  - `len(CONTEXT)`, `CONTEXT[a:b]`, `"needle" in CONTEXT`
  - `CONTEXT.search(pattern)`, `CONTEXT.findall(pattern)` (regex, like `re`)
  - `CONTEXT.lines()` (lazy line iterator), `CONTEXT.chunk(start, size)`
  - `str(CONTEXT)` materialises the whole document; avoid it for large inputs.
- `CONTEXT_ID`: Identifier of the stored document.

### Functions
- `context_length() -> int`, `context_preview(n=1000) -> str`, \
`context_slice(start, end) -> str`
- `llm_query(prompt: str, model=None) -> str`: Ask a sub-model a single question. Use it to:
  - Summarize sections of CONTEXT
  - Extract specific information from chunks
- `llm_query_batched(prompts: list[str], model=None) -> list[str]`: Several `llm_query` calls \
run concurrently; results keep the order of `prompts`.
{recursive}
- `FINAL(answer)`: Set the final answer and complete the task.
- `FINAL_VAR(var_name: str)`: Use the value of a variable as the final answer.
  The named variable must exist when the code block finishes.
- `SHOW_VARS()`: Print all user-defined variables.

Sub-query functions never raise for model failures: a failed call returns a string \
starting with `[ERROR:`. Check for it before using the result.

### Pre-imported Modules
- `re`, `json`, `math`, `collections`, `itertools`

## Strategy

1. **Inspect**: Study the document metadata and sample provided below the query.
   Design your patterns from the ACTUAL format you see.
2. **Search**: Start broad (`CONTEXT.findall(..., re.IGNORECASE)`), inspect the matches,
   then refine. If a search returns 0 or surprisingly few results, your pattern is wrong.
3. **Chunk + Analyze**: Slice sections of 1000-5000 characters and hand them to
   `llm_query_batched()` or, for sub-problems needing their own exploration, `rlm_query()`.
4. **Synthesize**: Combine results and call `FINAL(answer)`.

## Example

```{tag}
hits = CONTEXT.findall(r'^.*error.*$', re.MULTILINE | re.IGNORECASE)
print(len(hits), hits[:10])
```

```{tag}
size = len(CONTEXT)
chunks = [CONTEXT[i:i + 4000] for i in range(0, size, 4000)]
summaries = llm_query_batched([f"Summarize:\\n{c}" for c in chunks[:8]])
print(summaries)
```

## Important Rules

1. **NEVER print CONTEXT whole**: it is too large and wastes tokens
2. **Print intermediate results**: you only see what you print
3. **Always finish with FINAL() or FINAL_VAR()**: this is how you return your answer
4. **NEVER call FINAL() with empty results**: try a different approach first

## Output Format

Write code in a fenced block tagged `{tag}`:
```{tag}
# Your exploration code here
```

I will execute your code and show you the output. Only blocks tagged `{tag}` are executed.
"""

COMPACT_SYSTEM_PROMPT = """You are an AI with access to a CONTEXT variable in a Python REPL.

Answer the query by writing Python code to explore CONTEXT.

**Available:**
- `CONTEXT`: read-only document view (DON'T print it whole)
  - `CONTEXT[a:b]`, `len(CONTEXT)`, `CONTEXT.findall(pattern)`, `CONTEXT.search(pattern)`,
    `CONTEXT.lines()`
- `llm_query(prompt, model=None) -> str`, `llm_query_batched(prompts, model=None) -> list[str]`
{recursive}
- `FINAL(answer)`, `FINAL_VAR(name)`: return the answer
- `SHOW_VARS()`: list user-defined variables
- Modules: `re`, `json`, `math`, `collections`, `itertools`

Failed sub-queries return strings starting with `[ERROR:`.

Write code in ```{tag} blocks. Call `FINAL(answer)` when done.
"""


SUB_SYSTEM_PROMPT = """You are a focused assistant answering one self-contained request \
that is part of a larger analysis.

Answer using only the text you are given. Be concise and precise. If the text does not \
contain the requested information, say so plainly instead of guessing.
"""


CORRECTIVE_PROMPT = """Your reply did not contain a code block tagged `{tag}`, so nothing was \
executed.

Write Python code in a ```{tag} block to explore CONTEXT, and call FINAL(answer) or \
FINAL_VAR(name) from code when you are done."""


FINALIZING_PROMPT = """You have run out of {reason}. Code will no longer be executed.

Using everything you have learned so far, write your best final answer to the original \
query now, as plain text. Say clearly if the answer is incomplete."""


def get_system_prompt(
    compact: bool = False, *, fragment_tag: str = "python", can_recurse: bool = True
) -> str:
    """Get the root system prompt.

    Parameters
    ----------
    compact : bool
        Return the shorter variant.
    fragment_tag : str
        Fence tag that marks executable blocks.
    can_recurse : bool
        Whether ``rlm_query`` is usable at this depth.

    Returns
    -------
    str
        System prompt string.
    """
    template = COMPACT_SYSTEM_PROMPT if compact else FULL_SYSTEM_PROMPT
    recursive = _RECURSIVE_AVAILABLE if can_recurse else _RECURSIVE_UNAVAILABLE
    # Plain replace: the templates contain literal braces in code examples.
    return template.replace("{recursive}", recursive).replace("{tag}", fragment_tag)


def get_sub_system_prompt() -> str:
    """System prompt for flat ``llm_query`` sub-calls."""
    return SUB_SYSTEM_PROMPT


def get_user_prompt(query: str, metadata: str, context_sample: str = "") -> str:
    """Format the first user turn.

    Parameters
    ----------
    query : str
        The user's question.
    metadata : str
        Context Store summary of the artifact (never the full content).
    context_sample : str
        Bounded excerpts from several positions in the document.

    Returns
    -------
    str
        Formatted user prompt.
    """
    parts = [f"Query: {query}", f"\n## Document Metadata\n{metadata}"]
    if context_sample:
        parts.append(f"\n## Document Sample\n{context_sample}")
    parts.append(
        "\nPlease write Python code to explore CONTEXT and answer this query."
        "\nRemember to call FINAL() when you have the answer."
    )
    return "\n".join(parts)


def get_corrective_prompt(fragment_tag: str = "python") -> str:
    return CORRECTIVE_PROMPT.format(tag=fragment_tag)


def get_finalizing_prompt(reason: str) -> str:
    return FINALIZING_PROMPT.format(reason=reason)


def format_results(blocks: list[str]) -> str:
    """Join formatted fragment results into one user turn."""
    return "Output:\n" + ("\n---\n".join(blocks) if blocks else "(no output)")
