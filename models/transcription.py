"""Models for the transcription document returned by the Vonage transcription API."""
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class Word(BaseModel):
    """A single word with timing and confidence."""
    model_config = ConfigDict(extra="ignore")

    word: str
    start_time: int = 0
    end_time: int = 0
    confidence: float = 0.0


class Sentence(BaseModel):
    """A single transcript sentence with metadata."""
    model_config = ConfigDict(extra="ignore")

    sentence: str
    raw_sentence: str = ""
    duration: int = 0
    timestamp: int = 0
    words: List[Word] = Field(default_factory=list)


class Channel(BaseModel):
    """An audio channel in the transcription."""
    model_config = ConfigDict(extra="ignore")

    transcript: List[Sentence] = Field(default_factory=list)
    duration: int = 0

    def extract_transcript(self) -> str:
        """Join every sentence of the channel, one per line."""
        return "".join(f"{item.sentence}\n" for item in self.transcript)


class TranscriptionDocument(BaseModel):
    """Root object returned by the Vonage transcription API."""
    model_config = ConfigDict(extra="ignore")

    ver: str = ""
    request_id: str = ""
    channels: List[Channel] = Field(..., min_length=1)

    def extract_transcript(self) -> str:
        """Transcript text of the first channel."""
        return self.channels[0].extract_transcript()

    @property
    def duration_seconds(self) -> int:
        return self.channels[0].duration
