"""Tests for locating and rewriting the terraform configuration block."""

import pytest

from backend_config import (
    BlockSpan,
    NoBlockFound,
    find_block,
    render_backend_config,
    rewrite_backend_config,
)

MAIN_TF = '''provider "aws" {
  region = "eu-west-1"
}

terraform {
  required_version = ">= 0.11"

  backend "s3" {
    bucket = "states"
    key    = "network/terraform.tfstate"
  }
}

resource "aws_vpc" "main" {
  cidr_block = "10.0.0.0/16"
}
'''


def _is_balanced(block: str) -> bool:
    depth = 0
    for char in block:
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def test_find_block_spans_keyword_to_matching_brace():
    content = 'foo\nterraform {\n backend "local" {}\n}\nbar'

    span = find_block(content, "terraform")

    assert span == BlockSpan(4, len(content) - len("\nbar"))
    assert content[span.start:span.end] == 'terraform {\n backend "local" {}\n}'


def test_find_block_in_real_configuration():
    span = find_block(MAIN_TF)

    block = MAIN_TF[span.start:span.end]
    assert block.startswith("terraform {")
    assert block.endswith("}")
    assert 'backend "s3"' in block
    assert "aws_vpc" not in block
    assert _is_balanced(block)


def test_find_block_skips_braces_before_keyword():
    content = "locals { a = 1 }\nterraform {\n}\n"

    span = find_block(content)

    assert span.start == content.index("terraform")
    assert content[span.start:span.end] == "terraform {\n}"


def test_find_block_uses_first_occurrence():
    content = "terraform {\n  a = 1\n}\nterraform {\n  b = 2\n}\n"

    span = find_block(content)

    assert content[span.start:span.end] == "terraform {\n  a = 1\n}"


def test_find_block_matches_keyword_inside_longer_words():
    content = 'data "terraform_remote_state" "vpc" {\n}\nterraform {\n}\n'

    span = find_block(content)

    assert span.start == content.index("terraform_remote_state")
    assert content[span.start:span.end] == 'terraform_remote_state" "vpc" {\n}'


def test_find_block_counts_braces_inside_strings():
    content = 'terraform { x = "}" }'

    span = find_block(content)

    assert content[span.start:span.end] == 'terraform { x = "}'


@pytest.mark.parametrize("content", [
    "",
    'provider "aws" {\n  region = "eu-west-1"\n}\n',
    "TERRAFORM {\n}\n",
])
def test_find_block_without_keyword(content):
    assert find_block(content) is None


@pytest.mark.parametrize("content", [
    "terraform",
    "terraform {",
    'terraform {\n  backend "s3" {\n  }\n',
])
def test_find_block_with_unbalanced_braces(content):
    assert find_block(content) is None


def test_render_backend_config():
    assert render_backend_config("ptfe.example.com", "acme", "network") == '''terraform {
  backend "remote" {
    hostname     = "ptfe.example.com"
    organization = "acme"

    workspaces {
      name = "network"
    }
  }
}'''


def test_rewrite_replaces_only_the_block():
    content = 'foo\nterraform {\n backend "local" {}\n}\nbar'

    rewritten = rewrite_backend_config(content, "h", "o", "w")

    assert rewritten == "foo\n" + render_backend_config("h", "o", "w") + "\nbar"


def test_rewrite_preserves_surrounding_content():
    span = find_block(MAIN_TF)

    rewritten = rewrite_backend_config(MAIN_TF, "ptfe.example.com", "acme", "network")

    assert rewritten.startswith(MAIN_TF[:span.start])
    assert rewritten.endswith(MAIN_TF[span.end:])
    assert 'backend "s3"' not in rewritten
    assert 'backend "remote"' in rewritten


def test_rewrite_twice_gives_the_same_result():
    once = rewrite_backend_config(MAIN_TF, "ptfe.example.com", "acme", "network")
    twice = rewrite_backend_config(once, "ptfe.example.com", "acme", "network")

    assert twice == once


def test_rewrite_without_terraform_block():
    with pytest.raises(NoBlockFound) as exc_info:
        rewrite_backend_config('provider "aws" {}\n', "h", "o", "w")

    assert exc_info.value.keyword == "terraform"
    assert "terraform" in str(exc_info.value)
