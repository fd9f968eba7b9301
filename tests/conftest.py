"""Shared fixtures: fake model loaders so tests never download models."""

import time
import zlib

import numpy as np
import pytest

from contextsift.ranking.types import split_words

DIM = 64


class FakeEncoder:
    """Hashes word prefixes into a signed bag-of-words vector."""

    def __init__(self, delay: float = 0.0):
        self.calls: list[list[str]] = []
        self.delay = delay

    def encode(self, texts):
        self.calls.append(list(texts))
        if self.delay:
            time.sleep(self.delay)
        vectors = np.zeros((len(texts), DIM), dtype=np.float32)
        for i, text in enumerate(texts):
            for word in split_words(text):
                h = zlib.crc32(word[:4].encode())
                vectors[i, h % DIM] += 1.0 if (h >> 8) & 1 else -1.0
        return vectors


class FakeGenerator:
    """Answers "yes" when the file excerpt mentions `keyword`, else "no"."""

    def __init__(self, keyword: str = "auth", delay: float = 0.0):
        self.keyword = keyword
        self.delay = delay
        self.prompts: list[str] = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        if self.delay:
            time.sleep(self.delay)
        excerpt = prompt.split("File:", 1)[1]
        if self.keyword in excerpt.lower():
            return [{"generated_text": "yes, it handles authentication"}]
        return [{"generated_text": "no"}]


@pytest.fixture
def fake_encoder():
    return FakeEncoder()


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def embedding_loader(fake_encoder):
    return lambda model_id, device: fake_encoder


@pytest.fixture
def generative_loader(fake_generator):
    return lambda model_id, device: fake_generator


@pytest.fixture
def auth_candidates():
    return [
        (
            "src/auth/login.ts",
            "import { hashPassword } from '../utils/crypto';\n"
            "\n"
            "export async function login(username: string, password: string) {\n"
            "  const hash = hashPassword(password);\n"
            "  return authenticate(username, hash);\n"
            "}\n",
        ),
        (
            "src/utils/crypto.ts",
            "export function hashPassword(password: string): string {\n"
            "  return sha256(password);\n"
            "}\n",
        ),
        ("styles/theme.css", ".button {\n  color: red;\n}\n"),
    ]


@pytest.fixture
def make_encoder():
    return FakeEncoder


@pytest.fixture
def make_generator():
    return FakeGenerator
