"""
Technical module: programming knowledge, debugging notes and documentation.
"""

import re
from typing import Any, Dict, List, Optional

from .base import BaseModule

CODE_BLOCK_PATTERN = re.compile(r"```[\w+-]*\n([\s\S]*?)```")
STACK_TRACE_PATTERN = re.compile(r"(?:stack trace|traceback)[^:\n]*:?\s*([\s\S]+?)(?:\n\n|$)", re.IGNORECASE)

# Checked in order, first match wins
LANGUAGE_PATTERNS = {
    "python": re.compile(
        r"\b(def|elif|lambda|__name__)\b|\bprint\(|\bself\.|^\s*from [\w.]+ import\b|^\s*import [\w.]+\s*$",
        re.MULTILINE,
    ),
    "go": re.compile(r"\b(func|package|defer|goroutine|chan)\b"),
    "rust": re.compile(r"\b(fn|mut|impl|trait|Some|None)\b|\blet mut\b"),
    "typescript": re.compile(r"\b(interface|enum|namespace|declare)\b|:\s*(string|number|boolean)\b"),
    "javascript": re.compile(r"\b(const|let|var|function|async|await|require)\b|=>"),
    "java": re.compile(r"\b(public|private|extends|implements)\b|\bstatic void\b"),
    "cpp": re.compile(r"#include|std::|\b(cout|cin|template)\b"),
    "csharp": re.compile(r"\busing System\b|\bnamespace\b"),
}

FRAMEWORK_PATTERNS = {
    "javascript": {
        "react": re.compile(r"\b(React|useState|useEffect|JSX|Component)\b", re.IGNORECASE),
        "vue": re.compile(r"\b(Vue|v-model|v-if|v-for|mounted)\b", re.IGNORECASE),
        "angular": re.compile(r"@Component|@Injectable|\b(NgModule|Observable)\b", re.IGNORECASE),
        "express": re.compile(r"\b(express|app\.(get|post|put|delete)|router)\b", re.IGNORECASE),
        "nextjs": re.compile(r"\b(next|getServerSideProps|getStaticProps)\b", re.IGNORECASE),
    },
    "python": {
        "django": re.compile(r"\b(django|models\.Model|migrations)\b", re.IGNORECASE),
        "flask": re.compile(r"\b(Flask|render_template)\b|@app\.route", re.IGNORECASE),
        "fastapi": re.compile(r"\b(FastAPI|Pydantic)\b|@app\.(get|post)", re.IGNORECASE),
        "pytorch": re.compile(r"\b(torch|nn\.Module|cuda)\b", re.IGNORECASE),
        "tensorflow": re.compile(r"\b(tensorflow|keras)\b|\btf\.", re.IGNORECASE),
    },
}
FRAMEWORK_PATTERNS["typescript"] = FRAMEWORK_PATTERNS["javascript"]

ERROR_PATTERNS = [
    re.compile(r"\b(\w+(?:Error|Exception)):\s*([^\n]+)"),
    re.compile(r"\b(Error|Exception):\s*([^\n]+)", re.IGNORECASE),
]

TECH_TERMS = [
    "api", "database", "authentication", "performance", "security",
    "testing", "deployment", "docker", "kubernetes", "aws",
    "algorithm", "datastructure", "optimization", "debugging",
]


def detect_language(content: str) -> Optional[str]:
    for language, pattern in LANGUAGE_PATTERNS.items():
        if pattern.search(content):
            return language
    return None


def detect_framework(content: str, language: str) -> Optional[str]:
    for framework, pattern in FRAMEWORK_PATTERNS.get(language, {}).items():
        if pattern.search(content):
            return framework
    return None


def extract_error_info(content: str) -> Optional[Dict[str, Any]]:
    """Return the error type and, when present, the stack trace that follows it."""
    for pattern in ERROR_PATTERNS:
        match = pattern.search(content)
        if match:
            trace = STACK_TRACE_PATTERN.search(content)
            return {
                "type": match.group(1).strip(),
                "stackTrace": trace.group(1).strip() if trace else None,
            }
    return None


class TechnicalModule(BaseModule):
    """Stores programming knowledge, debugging information and technical documentation."""

    default_type = "note"

    def __init__(self, db_path, embeddings, cmi=None, cache_backend=None, **kwargs):
        super().__init__("technical", db_path, embeddings, cmi=cmi, cache_backend=cache_backend, **kwargs)

    def process_metadata(self, content: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        enriched = self._copy_metadata(metadata)

        code = CODE_BLOCK_PATTERN.search(content)
        if code:
            enriched["codeSnippet"] = code.group(1).strip()

        if not enriched.get("language"):
            language = detect_language(content)
            if language:
                enriched["language"] = language

        if not enriched.get("framework") and enriched.get("language"):
            framework = detect_framework(content, enriched["language"])
            if framework:
                enriched["framework"] = framework

        lowered = content.lower()
        if "error" in lowered or "exception" in lowered:
            error_info = extract_error_info(content)
            if error_info:
                enriched["errorType"] = error_info["type"]
                if error_info["stackTrace"]:
                    enriched["stackTrace"] = error_info["stackTrace"]

        if not enriched.get("tags"):
            enriched["tags"] = self.generate_tags(content, enriched)

        enriched["importanceScore"] = self.calculate_importance(content, enriched)
        enriched["categories"] = self.categorize(enriched)
        return enriched

    def generate_content(self, entity: Dict[str, Any]) -> str:
        parts = [
            entity.get("title"),
            f"Language: {entity['language']}" if entity.get("language") else None,
            f"Framework: {entity['framework']}" if entity.get("framework") else None,
            f"Error: {entity['errorType']}" if entity.get("errorType") else None,
            f"Solution: {entity['solution']}" if entity.get("solution") else None,
            f"```{entity.get('language', '')}\n{entity['codeSnippet']}\n```" if entity.get("codeSnippet") else None,
        ]
        return "\n".join(part for part in parts if part)

    def generate_tags(self, content: str, metadata: Dict[str, Any]) -> List[str]:
        tags = []
        if metadata.get("language"):
            tags.append(metadata["language"])
        if metadata.get("framework"):
            tags.append(metadata["framework"])
        if metadata.get("errorType"):
            tags.append("error")

        lowered = content.lower()
        tags.extend(term for term in TECH_TERMS if term in lowered)
        return list(dict.fromkeys(tags))[:10]

    def calculate_importance(self, content: str, metadata: Dict[str, Any]) -> float:
        score = 0.5
        if metadata.get("solution"):
            score += 0.2
        if metadata.get("errorType") and metadata.get("stackTrace"):
            score += 0.15
        if metadata.get("codeSnippet"):
            score += 0.1
        if metadata.get("documentationType"):
            score += 0.1
        if len(content) > 500:
            score += 0.05
        return round(min(score, 1.0), 2)

    def categorize(self, metadata: Dict[str, Any]) -> List[str]:
        categories = []
        if metadata.get("errorType"):
            categories.append("debugging")
        if metadata.get("codeSnippet"):
            categories.append("code-examples")
        if metadata.get("documentationType"):
            categories.append("documentation")
        if metadata.get("solution"):
            categories.append("solutions")
        if metadata.get("framework"):
            categories.append(f"framework-{metadata['framework']}")
        if metadata.get("language"):
            categories.append(f"lang-{metadata['language']}")
        return categories
