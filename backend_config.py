from typing import NamedTuple, Optional

TERRAFORM_KEYWORD = "terraform"

BACKEND_CONFIG_TEMPLATE = '''terraform {{
  backend "remote" {{
    hostname     = "{hostname}"
    organization = "{organization}"

    workspaces {{
      name = "{workspace_name}"
    }}
  }}
}}'''


class NoBlockFound(Exception):
    def __init__(self, keyword: str) -> None:
        super().__init__(keyword)
        self.keyword = keyword

    def __str__(self) -> str:
        return f"No '{self.keyword}' configuration block found"


class BlockSpan(NamedTuple):
    start: int
    end: int


def find_block(content: str, keyword: str = TERRAFORM_KEYWORD) -> Optional[BlockSpan]:
    """
    Find the first block whose header starts with `keyword`.

    Returns the half-open span from the keyword's first character up to and
    including the closing brace that balances the block, or None when the
    keyword never occurs or the braces never balance. Braces inside string
    literals are counted like any other brace.
    """
    start = -1
    depth = 0

    for pos, char in enumerate(content):
        if start == -1:
            if not content.startswith(keyword, pos):
                continue
            start = pos

        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return BlockSpan(start, pos + 1)

    return None


def render_backend_config(hostname: str, organization: str, workspace_name: str) -> str:
    return BACKEND_CONFIG_TEMPLATE.format(
        hostname=hostname,
        organization=organization,
        workspace_name=workspace_name,
    )


def rewrite_backend_config(content: str, hostname: str, organization: str, workspace_name: str) -> str:
    """Replace the top-level terraform block with a remote backend block."""
    span = find_block(content, TERRAFORM_KEYWORD)
    if span is None:
        raise NoBlockFound(TERRAFORM_KEYWORD)

    backend_config = render_backend_config(hostname, organization, workspace_name)
    return content[:span.start] + backend_config + content[span.end:]
