"""Pydantic models for validating stage analyzer JSON output."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Stage 0: preprocessing
# ---------------------------------------------------------------------------


class VerbatimQuote(BaseModel):
    quote: str = Field(..., min_length=20)
    speaker: str = Field(..., min_length=1)
    timestamp: Optional[str] = None


class Person(BaseModel):
    name: str = Field(..., min_length=1)
    role: Optional[str] = None


class Speakers(BaseModel):
    host: Person
    guest: Optional[Person] = None


class EpisodeMetadata(BaseModel):
    inferred_title: str = Field(..., min_length=1)
    core_message: str = Field(..., min_length=1)
    estimated_duration: Optional[str] = None


class PreprocessedTranscript(BaseModel):
    """Condensed stand-in for a long transcript."""

    comprehensive_summary: str = Field(..., min_length=500)
    verbatim_quotes: list[VerbatimQuote] = Field(..., min_length=5)
    key_topics: list[str] = Field(..., min_length=3)
    speakers: Speakers
    episode_metadata: EpisodeMetadata


# ---------------------------------------------------------------------------
# Stage 1: transcript analysis
# ---------------------------------------------------------------------------


class EpisodeBasics(BaseModel):
    title: str = Field(..., min_length=1)
    date: Optional[str] = None
    duration: Optional[str] = None
    main_topics: list[str] = Field(..., min_length=3, max_length=5)


class GuestInfo(BaseModel):
    name: str = Field(..., min_length=1)
    credentials: Optional[str] = None
    expertise: Optional[str] = None
    website: Optional[str] = None


class TranscriptAnalysis(BaseModel):
    episode_basics: EpisodeBasics
    guest_info: Optional[GuestInfo] = None
    episode_crux: str = Field(..., min_length=50, description="2-3 sentence core insight")


# ---------------------------------------------------------------------------
# Stage 2: quotes and tips
# ---------------------------------------------------------------------------


class Quote(BaseModel):
    quote: str = Field(..., min_length=20)
    speaker: str = Field(..., min_length=1)
    significance: str = Field(..., min_length=1)
    usage_suggestion: Optional[str] = None


class Tip(BaseModel):
    tip: str = Field(..., min_length=10)
    context: Optional[str] = None
    category: Optional[str] = None


class QuoteExtraction(BaseModel):
    quotes: list[Quote] = Field(..., min_length=5, max_length=8)
    tips: list[Tip] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Stage 3: high-level outline
# ---------------------------------------------------------------------------


class OutlineSection(BaseModel):
    section_title: str = Field(..., min_length=1)
    purpose: str = Field(..., min_length=1)
    word_count_target: int = Field(..., gt=0)


class PostStructure(BaseModel):
    hook: str = Field(..., min_length=20)
    hook_type: str = Field(..., min_length=1)
    context: Optional[str] = None
    sections: list[OutlineSection] = Field(..., min_length=3, max_length=4)
    cta: str = Field(..., min_length=20)


class BlogOutline(BaseModel):
    post_structure: PostStructure
    estimated_total_words: int = Field(..., gt=0)

    @model_validator(mode="after")
    def fill_missing_total(self) -> "BlogOutline":
        """Fall back to the sum of section targets when the model left a zero-ish total."""
        section_total = sum(s.word_count_target for s in self.post_structure.sections)
        if self.estimated_total_words < section_total // 2:
            self.estimated_total_words = section_total
        return self


# ---------------------------------------------------------------------------
# Stage 4: paragraph outlines
# ---------------------------------------------------------------------------


class ParagraphPlan(BaseModel):
    paragraph_number: int = Field(..., ge=1)
    main_point: str = Field(..., min_length=1)
    supporting_elements: list[str] = Field(default_factory=list)
    transition_note: Optional[str] = None


class SectionDetail(BaseModel):
    section_number: int = Field(..., ge=1)
    section_title: str = Field(..., min_length=1)
    paragraphs: list[ParagraphPlan] = Field(..., min_length=1)


class ParagraphOutline(BaseModel):
    section_details: list[SectionDetail] = Field(..., min_length=3)

    @field_validator("section_details")
    @classmethod
    def validate_section_numbering(cls, v: list[SectionDetail]) -> list[SectionDetail]:
        numbers = [s.section_number for s in v]
        if len(set(numbers)) != len(numbers):
            raise ValueError(f"Duplicate section numbers: {numbers}")
        return v


# ---------------------------------------------------------------------------
# Stage 5: headlines and copy
# ---------------------------------------------------------------------------


class HeadlineOptions(BaseModel):
    headlines: list[str] = Field(..., min_length=5)
    subheadings: list[str] = Field(..., min_length=4)
    taglines: list[str] = Field(..., min_length=3)
    social_hooks: list[str] = Field(..., min_length=3)


# ---------------------------------------------------------------------------
# Stage 8: social posts
# ---------------------------------------------------------------------------


class SocialPost(BaseModel):
    type: str = Field(..., min_length=1)
    content: str = Field(..., min_length=10)
    hashtags: list[str] = Field(default_factory=list)


class SocialPosts(BaseModel):
    posts: list[SocialPost] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Stage 9: email campaign
# ---------------------------------------------------------------------------


class EmailCampaign(BaseModel):
    subject_lines: list[str] = Field(..., min_length=5)
    preview_text: list[str] = Field(..., min_length=3)
    email_body: str = Field(..., min_length=200)
