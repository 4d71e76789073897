"""
Text extraction for uploaded RAG documents.

Each supported format has an extractor with the same contract:
extract(filename, data) -> plain text, raising ExtractionFailed on failure.

- txt: always decoded directly (UTF-8, invalid sequences replaced).
- pdf/docx: chosen by EXTRACTION_STRATEGY
    heuristic  byte-pattern scan of the raw file, no parsing library
    library    pypdf / python-docx
    model      OpenAI multimodal model via LangChain for PDF; DOCX falls back
               to python-docx, since chat-completions file inputs are PDF-only
"""
import base64
import html
import re
import zlib
from io import BytesIO
from typing import Callable, Dict, List, Optional, Tuple, Type

from docx import Document as DocxDocument
from langchain_core.messages import HumanMessage
from langchain_openai import ChatOpenAI
from openai import APITimeoutError
from pypdf import PdfReader

from rag_ingest.core.errors import ExtractionFailed, UnsupportedFileType

MIME_TYPES = {
    "txt": "text/plain",
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

STRATEGIES = ("heuristic", "library", "model")

EXTRACTION_INSTRUCTION = (
    "Extract all readable text from this document. Return only the raw extracted text: "
    "no commentary, no summary, no markdown. Keep paragraphs separated by a blank line."
)

_SPACES = re.compile(r"[ \t]+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


def file_extension(filename: str) -> str:
    """Lowercase suffix after the last '.', or '' when there is none."""
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].lower()


def normalize_text(text: str) -> str:
    text = _SPACES.sub(" ", text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


class TextExtractor:
    name = "base"

    def extract(self, filename: str, data: bytes) -> str:
        raise NotImplementedError


class PlainTextExtractor(TextExtractor):
    name = "plain_text"

    def extract(self, filename: str, data: bytes) -> str:
        text = data.decode("utf-8", errors="replace")
        return text.replace("\r\n", "\n").replace("\r", "\n")


# --- PDF heuristics ---
# Content streams are tokenized in one forward pass. Each token pattern is a
# single character-class run, so scanning is linear in the stream length.
_PDF_TOKEN = re.compile(
    r"\s+"
    r"|%[^\r\n]*"                  # comment
    r"|/[^\s()<>\[\]{}/%]*"        # name
    r"|<<|>>|<[^<>]*>"             # dictionary delimiters, hex string
    r"|[^\s()<>\[\]{}/%]+"         # operator or number
    r"|.",
    re.S,
)
_PDF_STRING_PART = re.compile(r"[^\\()]+|\\(.)|\\$|\(|\)", re.S)
_PDF_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", "\\": "\\", "(": "(", ")": ")"}
_PDF_SHOW_OPERATORS = ("Tj", "TJ")
# Upper bound on one inflated content stream
_MAX_INFLATED_BYTES = 16 * 1024 * 1024
_DEADLINE_CHECK_EVERY = 10000


def _stream_bodies(data: bytes) -> List[bytes]:
    """Raw bytes between each `stream` keyword and its `endstream`."""
    bodies = []
    pos = 0
    while True:
        start = data.find(b"stream", pos)
        if start < 0:
            break
        pos = start + len(b"stream")
        if data[max(0, start - 3):start] == b"end":
            continue
        if data.startswith(b"\r\n", pos):
            pos += 2
        elif data.startswith(b"\n", pos):
            pos += 1
        else:
            continue
        end = data.find(b"endstream", pos)
        if end < 0:
            break
        body = data[pos:end]
        if body.endswith(b"\r\n"):
            body = body[:-2]
        elif body.endswith((b"\n", b"\r")):
            body = body[:-1]
        bodies.append(body)
        pos = end + len(b"endstream")
    return bodies


def _read_literal(content: str, pos: int) -> Tuple[Optional[str], int]:
    """
    Read a literal string whose opening '(' ends just before `pos`.

    Balanced inner parentheses are part of the string. Escapes are undone in a
    single pass; unknown escapes are kept verbatim. Returns (None, end) when
    the string is never closed.
    """
    depth = 1
    out: List[str] = []
    while pos < len(content):
        match = _PDF_STRING_PART.match(content, pos)
        piece = match.group(0)
        pos = match.end()
        if piece == "(":
            depth += 1
        elif piece == ")":
            depth -= 1
            if depth == 0:
                return "".join(out), pos
        elif piece[0] == "\\":
            piece = _PDF_ESCAPES.get(match.group(1), piece)
        out.append(piece)
    return None, pos


class HeuristicPdfExtractor(TextExtractor):
    """
    Best-effort text recovery from producer-generated PDFs.

    Scans content streams (inflating Flate-compressed ones) for BT ... ET text
    objects and pulls the literal operands of Tj and TJ. Hex strings, font
    encodings and CID fonts are not handled.
    """
    name = "heuristic_pdf"

    def __init__(self, deadline: Optional[Callable[[], float]] = None):
        # deadline() returns the seconds left in the request budget
        self._deadline = deadline

    def _check_deadline(self) -> None:
        if self._deadline is not None and self._deadline() <= 0:
            raise ExtractionFailed("Request deadline exceeded during text extraction")

    def _content_streams(self, data: bytes) -> List[str]:
        bodies = _stream_bodies(data)
        if not bodies:
            return [data.decode("latin-1")]
        streams = []
        for body in bodies:
            try:
                inflated = zlib.decompressobj().decompress(body, _MAX_INFLATED_BYTES)
                streams.append(inflated.decode("latin-1"))
            except zlib.error:
                streams.append(body.decode("latin-1"))
        return streams

    def _shown_strings(self, content: str) -> List[str]:
        shown: List[str] = []
        operands: List[str] = []
        in_text = False
        pos, steps = 0, 0
        while pos < len(content):
            steps += 1
            if steps % _DEADLINE_CHECK_EVERY == 0:
                self._check_deadline()

            if content[pos] == "(":
                value, pos = _read_literal(content, pos + 1)
                if value is None:
                    break
                if in_text:
                    operands.append(value)
                continue

            token = _PDF_TOKEN.match(content, pos).group(0)
            pos += len(token)
            if not (token[0].isalpha() or token[0] in "'\""):
                continue
            if token == "BT":
                in_text = True
            elif token == "ET":
                in_text = False
            elif token in _PDF_SHOW_OPERATORS and in_text:
                shown.extend(operands)
            operands = []
        return shown

    def extract(self, filename: str, data: bytes) -> str:
        parts: List[str] = []
        for content in self._content_streams(data):
            self._check_deadline()
            parts.extend(self._shown_strings(content))
        return normalize_text(" ".join(parts))


# --- DOCX heuristics ---
# Run bodies never contain '<' (it is escaped as &lt;), which keeps the scan linear
_DOCX_TEXT_RUN = re.compile(r"<w:t(?:\s[^<>]*)?>([^<]*)</w:t>")


class HeuristicDocxExtractor(TextExtractor):
    """
    Pulls <w:t> runs out of the raw byte stream. The container is not unzipped,
    so this only finds text in stored (uncompressed) or flat-XML documents.
    """
    name = "heuristic_docx"

    def extract(self, filename: str, data: bytes) -> str:
        content = data.decode("utf-8", errors="replace")
        runs = [html.unescape(run) for run in _DOCX_TEXT_RUN.findall(content)]
        return normalize_text(" ".join(runs))


# --- Library-backed ---
class PdfLibraryExtractor(TextExtractor):
    name = "pypdf"

    def extract(self, filename: str, data: bytes) -> str:
        reader = PdfReader(BytesIO(data))
        texts = [page.extract_text() or "" for page in reader.pages]
        return normalize_text("\n\n".join(t for t in texts if t.strip()))


class DocxLibraryExtractor(TextExtractor):
    name = "python_docx"

    def extract(self, filename: str, data: bytes) -> str:
        doc = DocxDocument(BytesIO(data))
        parts = [p.text for p in doc.paragraphs if p.text.strip()]
        return normalize_text("\n\n".join(parts))


# --- Model-backed ---
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\n?|\n?```$")


def _response_text(content) -> str:
    """Coerce a chat model response body (str or content blocks) to plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces = []
        for block in content:
            if isinstance(block, str):
                pieces.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                pieces.append(str(block.get("text") or ""))
        return "\n".join(pieces)
    return str(content or "")


class ModelExtractor(TextExtractor):
    """Sends a PDF to a multimodal chat model and treats the reply as untrusted text."""
    name = "model"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        llm: Optional[ChatOpenAI] = None,
    ):
        if llm is None and not api_key:
            raise ExtractionFailed("OPENAI_API_KEY is required for model-based extraction.")
        self.timeout = timeout
        self._llm = llm or ChatOpenAI(
            model=model,
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )

    def extract(self, filename: str, data: bytes) -> str:
        if file_extension(filename) != "pdf":
            raise ExtractionFailed("Model extraction only accepts PDF files")
        mime = MIME_TYPES["pdf"]
        b64 = base64.standard_b64encode(data).decode("utf-8")
        message = HumanMessage(
            content=[
                {
                    "type": "file",
                    "file": {"filename": filename, "file_data": f"data:{mime};base64,{b64}"},
                },
                {"type": "text", "text": EXTRACTION_INSTRUCTION},
            ]
        )
        try:
            response = self._llm.invoke([message])
        except APITimeoutError:
            raise ExtractionFailed(f"Text extraction timed out after {self.timeout:.0f}s")

        text = _response_text(getattr(response, "content", response)).strip()
        text = _CODE_FENCE.sub("", text)
        text = _CONTROL_CHARS.sub("", text)
        return normalize_text(text.replace("\r\n", "\n"))


_EXTRACTORS: Dict[str, Dict[str, Type[TextExtractor]]] = {
    "heuristic": {"pdf": HeuristicPdfExtractor, "docx": HeuristicDocxExtractor},
    "library": {"pdf": PdfLibraryExtractor, "docx": DocxLibraryExtractor},
    # Chat-completions file inputs only accept PDF; DOCX is read locally
    "model": {"pdf": ModelExtractor, "docx": DocxLibraryExtractor},
}


def build_extractor(
    filename: str,
    strategy: str = "heuristic",
    *,
    api_key: Optional[str] = None,
    model: str = "gpt-4o-mini",
    timeout: float = 60.0,
    deadline: Optional[Callable[[], float]] = None,
) -> TextExtractor:
    ext = file_extension(filename)
    if ext not in MIME_TYPES:
        raise UnsupportedFileType(ext)
    if ext == "txt":
        return PlainTextExtractor()
    if strategy not in _EXTRACTORS:
        raise ExtractionFailed(f"Unknown extraction strategy '{strategy}'")

    extractor_cls = _EXTRACTORS[strategy][ext]
    if extractor_cls is ModelExtractor:
        return ModelExtractor(api_key=api_key, model=model, timeout=timeout)
    if extractor_cls is HeuristicPdfExtractor:
        return HeuristicPdfExtractor(deadline=deadline)
    return extractor_cls()
