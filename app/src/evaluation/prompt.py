"""
Evaluation prompt construction.

Each answer is listed once, behind an explicit numeric index that maps to
its segment key, part and question, so model answers can be matched back
to segments without relying on the order the model writes them in.
"""

import json
from typing import Dict, List, Sequence

from src.asr.metrics import PronunciationEstimate
from src.asr.models import AudioSegment, MergedTranscript

# part → (minimum words, target words) for model answers
MODEL_ANSWER_LENGTHS = {1: (45, 55), 2: (150, 170), 3: (60, 75)}


def segment_index(segments: Sequence[AudioSegment]) -> List[Dict]:
    return [
        {
            "index": i,
            "segment_key": s.segment_key,
            "partNumber": s.part_number,
            "questionNumber": s.question_number,
        }
        for i, s in enumerate(segments, start=1)
    ]


def _transcript_line(index: int, segment: AudioSegment, transcript: MergedTranscript) -> str:
    pauses = len(transcript.long_pauses)
    stats = f"{transcript.word_count}w/{transcript.duration:.0f}s"
    if pauses:
        stats += f"/{pauses}pauses"
    question = (segment.question_text or "N/A").replace('"', "'")
    text = transcript.final_text.replace('"', "'")
    return (
        f"{index}. [P{segment.part_number}Q{segment.question_number}|{segment.segment_key}] "
        f'Q:"{question}" T:"{text}" ({stats})'
    )


def _model_answer_slot(segment: AudioSegment) -> str:
    minimum, target = MODEL_ANSWER_LENGTHS.get(segment.part_number, (45, 55))
    return json.dumps({
        "segment_key": segment.segment_key,
        "partNumber": segment.part_number,
        "questionNumber": segment.question_number,
        "estimatedBand": "<1-9>",
        "modelAnswer": f"WRITE {minimum}+ WORDS HERE (target {target}w)",
        "keyImprovements": ["<1 tip>"],
    })


def build_evaluation_prompt(
    segments: Sequence[AudioSegment],
    transcripts: Dict[str, MergedTranscript],
    pronunciation: PronunciationEstimate,
    topic: str = None,
    difficulty: str = None,
    evaluation_mode: str = "accuracy",
) -> str:
    parts = sorted({s.part_number for s in segments})
    lines = [
        _transcript_line(i, s, transcripts[s.segment_key])
        for i, s in enumerate(segments, start=1)
    ]
    slots = ",".join(_model_answer_slot(s) for s in segments)
    index_map = json.dumps(segment_index(segments))

    return f"""IELTS Speaking Evaluation Task

**CONTEXT:**
- Topic: {topic or 'General'}
- Difficulty: {difficulty or 'Standard'}
- Evaluation mode: {evaluation_mode}
- Parts covered: {', '.join(str(p) for p in parts)}
- Total questions: {len(segments)}

**ANSWER INDEX (index → segment_key, part, question):**
{index_map}

**CANDIDATE TRANSCRIPTS:**
{chr(10).join(lines)}

**PRONUNCIATION ESTIMATE:** Band {pronunciation.estimated_band} ({pronunciation.confidence} confidence)
Transcripts come from speech recognition; you cannot hear the audio. Keep the pronunciation band close to the estimate.

**SCORING GUIDELINES:**
- Off-topic/irrelevant -> Band 2.5-3.5
- Very short (<10 words) -> Band 2-3
- Nonsense/gibberish -> Band 1.5-2.5
- Silent/no response -> Band 1-2
- Every weakness must include a direct quote: "Issue description (e.g., '[exact quote from transcript]')"

**MODEL ANSWER LENGTHS:**
- Part 1: at least 45 words each (aim for 50-55)
- Part 2: at least 150 words (aim for 160-180)
- Part 3: at least 60 words each (aim for 70-85)

**OUTPUT FORMAT (valid JSON only, one modelAnswers entry per indexed answer):**
{{
  "criteria": {{
    "fluency_coherence": {{"band": <1-9>, "feedback": "<2 sentences>", "strengths": ["..."], "weaknesses": ["... (e.g., '[quote]')"], "suggestions": ["..."]}},
    "lexical_resource": {{"band": <1-9>, "feedback": "<2 sentences>", "strengths": ["..."], "weaknesses": ["... (e.g., '[quote]')"], "suggestions": ["..."]}},
    "grammatical_range": {{"band": <1-9>, "feedback": "<2 sentences>", "strengths": ["..."], "weaknesses": ["... (e.g., '[quote]')"], "suggestions": ["..."]}},
    "pronunciation": {{"band": {pronunciation.estimated_band}, "feedback": "...", "strengths": ["..."], "weaknesses": ["..."], "suggestions": ["..."]}}
  }},
  "summary": "<2 sentence overall summary>",
  "examiner_notes": "<1 sentence key observation>",
  "modelAnswers": [{slots}],
  "lexical_upgrades": [{{"original": "...", "upgraded": "...", "context": "..."}}],
  "part_notes": [],
  "improvement_priorities": ["...", "..."],
  "strengths_to_maintain": ["..."]
}}"""
