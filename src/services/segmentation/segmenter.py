"""Multi-strategy text segmentation into bounded, overlapping fragments.

Splits a document's extracted text into :class:`~src.models.knowledge.FragmentDraft`
objects sized for embedding models.  Four strategies are supported:

1. **fixed** -- a sliding character window that prefers to end at
   whitespace, stepping forward by the window length minus the overlap.

2. **paragraph** -- blank-line-delimited paragraphs are packed into a
   fragment until the next one would exceed the target size; the next
   fragment is seeded with the trailing overlap of the previous one,
   moved to a paragraph or word boundary.

3. **semantic** -- the paragraph strategy, except paragraphs longer than
   the target are broken into sentences first so each topic unit stays
   whole inside a fragment.

4. **sentence** -- the same packing over sentences; the overlap is built
   by walking back over whole sentences until the overlap is covered,
   always carrying over at least the previous fragment's last sentence.

Every draft is an exact slice of the input (``text[start:end]``) with
surrounding whitespace excluded, so positions can always be mapped back to
the document.  A unit longer than ``max_fragment_size`` is cut with the
fixed window first; no strategy emits an oversize fragment from one giant
paragraph or sentence.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Callable

import structlog

from src.config.pipeline_config import SegmentationOptions
from src.models.knowledge import (
    ContentType,
    Fragment,
    FragmentDraft,
    FragmentMetadata,
    SegmentationMethod,
    SegmentationStats,
)
from src.utils.errors import SegmentationError

logger = structlog.get_logger(logger_name=__name__)

# Common abbreviations that should NOT trigger a sentence split.
_ABBREVIATIONS = frozenset(
    {
        "Dr",
        "Mr",
        "Mrs",
        "Ms",
        "Prof",
        "Jr",
        "Sr",
        "St",
        "Inc",
        "Ltd",
        "Co",
        "No",
        "Vol",
        "vs",
        "etc",
        "approx",
        "e.g",
        "i.e",
        "dept",
        "est",
    }
)

_PARAGRAPH_BREAK_RE = re.compile(r"\n\s*\n")
_SENTENCE_END_RE = re.compile(r"[.!?](?:\s|$)")

_HEADING_RE = re.compile(r"^#{1,6}\s")
_LIST_RE = re.compile(r"^\s*(?:[-*+]|\d+\.)\s", re.MULTILINE)
_CODE_RE = re.compile(r"```|`[^`\n]+`")
_QUOTE_RE = re.compile(r"^\s*>", re.MULTILINE)
_TABLE_RE = re.compile(r"\|.*\|")

# A fixed window may give back at most this share of itself to end on whitespace.
_WORD_BOUNDARY_SLACK = 0.2

Span = tuple[int, int]
# (start, end, unit_count)
_RawFragment = tuple[int, int, int]
_OverlapFn = Callable[[str, list[Span], int, int], int]


def detect_content_type(content: str) -> ContentType:
    """Classify *content* with simple markup heuristics."""
    if _HEADING_RE.match(content):
        return ContentType.HEADING
    if _LIST_RE.search(content):
        return ContentType.LIST
    if _CODE_RE.search(content):
        return ContentType.CODE
    if _QUOTE_RE.search(content):
        return ContentType.QUOTE
    if _TABLE_RE.search(content):
        return ContentType.TABLE
    return ContentType.TEXT


class Segmenter:
    """Splits document text into ordered fragment drafts.

    Parameters
    ----------
    options:
        Default :class:`SegmentationOptions`; :meth:`segment` accepts a
        per-call override (used by rechunk and optimize).
    """

    def __init__(self, options: SegmentationOptions | None = None) -> None:
        self._options = options or SegmentationOptions()

    @property
    def options(self) -> SegmentationOptions:
        return self._options

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def segment(self, text: str, options: SegmentationOptions | None = None) -> list[FragmentDraft]:
        """Split *text* into drafts using ``options.method``.

        Parameters
        ----------
        text:
            The full extracted document text.
        options:
            Overrides the segmenter's default options for this call.

        Returns
        -------
        list[FragmentDraft]
            Drafts in document order.  Non-empty text always yields at
            least one draft.

        Raises
        ------
        SegmentationError
            If *text* is empty or whitespace-only.
        """
        opts = options or self._options
        if not text or not text.strip():
            raise SegmentationError("Cannot segment empty or whitespace-only text")

        if opts.method == SegmentationMethod.FIXED:
            raw = [
                (s, e, 1)
                for s, e in self._fixed_spans(text, 0, len(text), opts.target_size, opts.overlap)
            ]
        elif opts.method == SegmentationMethod.PARAGRAPH:
            units = self._bounded(text, self._paragraph_spans(text), opts)
            raw = self._accumulate(text, units, opts, self._char_overlap_start)
        elif opts.method == SegmentationMethod.SEMANTIC:
            units = []
            for start, end in self._paragraph_spans(text):
                if end - start > opts.target_size:
                    units.extend(self._sentence_spans(text, start, end))
                else:
                    units.append((start, end))
            raw = self._accumulate(
                text, self._bounded(text, units, opts), opts, self._char_overlap_start
            )
        elif opts.method == SegmentationMethod.SENTENCE:
            units = []
            for start, end in self._paragraph_spans(text):
                units.extend(self._sentence_spans(text, start, end))
            raw = self._accumulate(
                text, self._bounded(text, units, opts), opts, self._sentence_overlap_start
            )
        else:  # pragma: no cover - enum is exhaustive
            raise SegmentationError(f"Unknown segmentation method: {opts.method}")

        if not raw:
            start, end = self._trim(text, 0, len(text))
            raw = [(start, end, 1)]

        drafts = self._build_drafts(text, raw, opts.method)
        logger.debug(
            "segmentation_complete",
            method=opts.method.value,
            fragments=len(drafts),
            text_length=len(text),
            avg_size=sum(len(d.content) for d in drafts) // len(drafts),
        )
        return drafts

    def validate(self, draft: FragmentDraft, options: SegmentationOptions | None = None) -> bool:
        """Return ``True`` if *draft* is within the configured size bounds."""
        opts = options or self._options
        size = len(draft.content.strip())
        return opts.min_fragment_size <= size <= opts.max_fragment_size

    def filter_valid(
        self,
        drafts: list[FragmentDraft],
        options: SegmentationOptions | None = None,
    ) -> tuple[list[FragmentDraft], list[FragmentDraft]]:
        """Partition *drafts* into ``(accepted, rejected)``.

        A document that segments into a single draft keeps it even below
        the minimum size, so every non-empty document has a fragment.
        Oversize drafts are always rejected.
        """
        opts = options or self._options
        if len(drafts) == 1 and len(drafts[0].content) <= opts.max_fragment_size:
            return list(drafts), []
        accepted: list[FragmentDraft] = []
        rejected: list[FragmentDraft] = []
        for draft in drafts:
            (accepted if self.validate(draft, opts) else rejected).append(draft)
        if rejected:
            logger.info(
                "fragments_rejected",
                rejected=len(rejected),
                accepted=len(accepted),
                min_size=opts.min_fragment_size,
                max_size=opts.max_fragment_size,
            )
        return accepted, rejected

    @staticmethod
    def get_stats(fragments: list[Fragment]) -> SegmentationStats:
        """Summarise a document's fragments for status reporting."""
        if not fragments:
            return SegmentationStats()
        types = Counter(f.metadata.content_type.value for f in fragments)
        return SegmentationStats(
            total_fragments=len(fragments),
            avg_fragment_size=sum(len(f.content) for f in fragments) // len(fragments),
            avg_word_count=sum(f.metadata.word_count for f in fragments) // len(fragments),
            method=fragments[0].metadata.chunking_method,
            content_types=dict(types),
        )

    # ------------------------------------------------------------------
    # Unit splitting
    # ------------------------------------------------------------------

    @staticmethod
    def _trim(text: str, start: int, end: int) -> Span:
        while start < end and text[start].isspace():
            start += 1
        while end > start and text[end - 1].isspace():
            end -= 1
        return start, end

    def _paragraph_spans(self, text: str) -> list[Span]:
        spans: list[Span] = []
        last = 0
        for match in _PARAGRAPH_BREAK_RE.finditer(text):
            start, end = self._trim(text, last, match.start())
            if end > start:
                spans.append((start, end))
            last = match.end()
        start, end = self._trim(text, last, len(text))
        if end > start:
            spans.append((start, end))
        return spans

    def _sentence_spans(self, text: str, start: int, end: int) -> list[Span]:
        """Sentence spans inside ``text[start:end]``, respecting abbreviations.

        Periods after known abbreviations are masked with ``\\x00`` (same
        length) so match offsets stay aligned with the original text.
        """
        segment = text[start:end]
        masked = segment
        for abbr in _ABBREVIATIONS:
            masked = re.sub(rf"\b{re.escape(abbr)}\.", f"{abbr}\x00", masked)

        spans: list[Span] = []
        last = 0
        for match in _SENTENCE_END_RE.finditer(masked):
            s, e = self._trim(text, start + last, start + match.end())
            if e > s:
                spans.append((s, e))
            last = match.end()
        s, e = self._trim(text, start + last, end)
        if e > s:
            spans.append((s, e))
        return spans or [(start, end)]

    def _fixed_spans(self, text: str, lo: int, hi: int, size: int, overlap: int) -> list[Span]:
        """Sliding windows over ``text[lo:hi]``.

        A window ends at its last whitespace when that gives back no more
        than 20% of the window; the next window starts ``overlap``
        characters before the previous end.
        """
        spans: list[Span] = []
        pos = lo
        while pos < hi:
            end = min(pos + size, hi)
            if end < hi:
                cut = max(text.rfind(" ", pos, end), text.rfind("\n", pos, end))
                if cut > pos + size * (1 - _WORD_BOUNDARY_SLACK):
                    end = cut
            s, e = self._trim(text, pos, end)
            if e > s:
                spans.append((s, e))
            if end >= hi:
                break
            next_pos = end - overlap
            pos = next_pos if next_pos > pos else end
        return spans

    def _bounded(self, text: str, units: list[Span], opts: SegmentationOptions) -> list[Span]:
        """Hard-split any unit longer than ``max_fragment_size``."""
        bounded: list[Span] = []
        for start, end in units:
            if end - start > opts.max_fragment_size:
                bounded.extend(self._fixed_spans(text, start, end, opts.target_size, opts.overlap))
            else:
                bounded.append((start, end))
        return bounded

    # ------------------------------------------------------------------
    # Accumulation and overlap
    # ------------------------------------------------------------------

    def _accumulate(
        self,
        text: str,
        units: list[Span],
        opts: SegmentationOptions,
        overlap_start: _OverlapFn,
    ) -> list[_RawFragment]:
        """Greedily pack *units* into fragments of at most ``target_size``.

        When the next unit would overflow, the current fragment is flushed
        and the next one starts at ``overlap_start(...)``, which always
        lies at or before the incoming unit.
        """
        fragments: list[_RawFragment] = []
        current: list[Span] = []
        frag_start = 0

        for unit_start, unit_end in units:
            if not current:
                current = [(unit_start, unit_end)]
                frag_start = unit_start
                continue

            if unit_end - frag_start <= opts.target_size:
                current.append((unit_start, unit_end))
                continue

            frag_end = current[-1][1]
            fragments.append((frag_start, frag_end, len(current)))

            new_start = unit_start
            if opts.overlap > 0:
                new_start = min(overlap_start(text, current, frag_start, opts.overlap), unit_start)
            if unit_end - new_start > opts.max_fragment_size:
                new_start = unit_start
            new_start = self._trim(text, new_start, unit_end)[0]

            current = [(max(u[0], new_start), u[1]) for u in current if u[1] > new_start]
            current.append((unit_start, unit_end))
            frag_start = new_start

        if current:
            fragments.append((frag_start, current[-1][1], len(current)))
        return fragments

    def _char_overlap_start(self, text: str, units: list[Span], frag_start: int, overlap: int) -> int:
        """Start of the trailing *overlap* characters of a fragment.

        Prefers a paragraph boundary inside the window when at least half
        the overlap survives, otherwise the next word start within half
        the overlap.  A fragment no longer than the overlap is reused whole.
        """
        frag_end = units[-1][1]
        if frag_end - frag_start <= overlap:
            return frag_start
        start = frag_end - overlap
        half = overlap // 2

        paragraph_break = _PARAGRAPH_BREAK_RE.search(text, start, frag_end)
        if paragraph_break and frag_end - paragraph_break.end() >= half:
            return self._trim(text, paragraph_break.end(), frag_end)[0]

        if not text[start - 1].isspace() and not text[start].isspace():
            for offset in range(start, min(start + half, frag_end)):
                if text[offset].isspace():
                    start = offset
                    break
        return self._trim(text, start, frag_end)[0]

    @staticmethod
    def _sentence_overlap_start(text: str, units: list[Span], frag_start: int, overlap: int) -> int:
        """Walk back over whole sentences until *overlap* characters are covered.

        At least the last sentence is always carried over, even when it alone
        exceeds *overlap*; ``max_fragment_size`` is the only cut-off.
        """
        frag_end = units[-1][1]
        start = None
        for unit_start, _ in reversed(units):
            start = unit_start
            if frag_end - unit_start >= overlap:
                break
        return start if start is not None else frag_end

    # ------------------------------------------------------------------
    # Draft construction
    # ------------------------------------------------------------------

    @staticmethod
    def _build_drafts(
        text: str,
        raw: list[_RawFragment],
        method: SegmentationMethod,
    ) -> list[FragmentDraft]:
        drafts: list[FragmentDraft] = []
        for index, (start, end, unit_count) in enumerate(raw):
            overlap_before = max(0, raw[index - 1][1] - start) if index > 0 else 0
            overlap_after = max(0, end - raw[index + 1][0]) if index + 1 < len(raw) else 0
            content = text[start:end]
            drafts.append(
                FragmentDraft(
                    index=index,
                    content=content,
                    start_index=start,
                    end_index=end,
                    metadata=FragmentMetadata(
                        word_count=len(content.split()),
                        char_count=len(content),
                        content_type=detect_content_type(content),
                        chunking_method=method,
                        unit_count=unit_count,
                        overlap_before=overlap_before,
                        overlap_after=overlap_after,
                    ),
                )
            )
        return drafts
