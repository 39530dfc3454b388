"""Prompt builders for every model-backed handler."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_LANGUAGE = "en"
DEFAULT_PASSING_NOTE = "Target: confidently exceed the passing threshold before adding stretch goals."
_JSON_KEYS_NOTE = "Respond in {language} but keep JSON keys in English."


@dataclass(slots=True, frozen=True)
class PassingThresholds:
    pass_pct: float
    good_pct: float
    ace_pct: float

    def note(self) -> str:
        return (
            f"Target readiness: pass at {_pct(self.pass_pct)}% confidence, "
            f"solid at {_pct(self.good_pct)}%, ace at {_pct(self.ace_pct)}%."
        )


def study_plan_prompt(  # noqa: PLR0913
    chunk_text: str,
    *,
    language: str = DEFAULT_LANGUAGE,
    chunk_number: int = 1,
    total_chunks: int = 1,
    exam_content: str = "",
    passing_note: str = DEFAULT_PASSING_NOTE,
    additional_notes: str = "",
) -> str:
    chunk_line = ""
    if total_chunks > 1:
        chunk_line = (
            f"You are processing chunk {chunk_number} of {total_chunks}. "
            "Focus on this chunk and avoid repeating topics from other chunks. "
        )
    sections = [
        "You are an expert educational curriculum designer. Analyze the lecture materials and "
        "create a structured, exam-aware study plan broken into categories. "
        f"{chunk_line}Prioritize coverage that secures the minimum passing score first, "
        "then build stretch learning on top.",
        f"**Materials Content:**\n{chunk_text}",
    ]
    if exam_content:
        sections.append(
            "**Past Exam Signals (VERY HIGH PRIORITY - these topics appeared on exams):**\n"
            f"{exam_content}",
        )
    if additional_notes:
        sections.append(
            "**Instructor / Additional Notes (HIGH PRIORITY - boost these topics by 15-25 points):**\n"
            f"{additional_notes}\n\n"
            'Topics mentioned in these notes must be marked "mentionedInNotes": true '
            "and receive a +15-25 priority boost.",
        )
    sections.append(passing_note)
    sections.append(
        "**Instructions:**\n"
        "1. Identify main topics and group them into syllabus-style categories.\n"
        "2. Mark must-pass items as **core**, recurring items as **high-yield**, "
        "nice-to-have items as **stretch**.\n"
        '3. Topics from past exams get "fromExamSource": true and "examRelevance": "high".\n'
        "4. Order core items first, then high-yield, then stretch.\n"
        "5. Each unit should fit one 30-60 minute session and list its key concepts.\n"
        "6. priorityScore is 0-100; higher means more critical for passing.\n"
        '7. examRelevance is "high", "medium" or "low".',
    )
    sections.append(
        "**Return a JSON array with this structure:**\n"
        "[\n"
        "  {\n"
        '    "title": "Topic title (concise, 5-10 words)",\n'
        '    "description": "Brief description (1-2 sentences)",\n'
        '    "keyConcepts": ["concept1", "concept2"],\n'
        '    "category": "Syllabus category/chapter",\n'
        '    "importanceTier": "core | high-yield | stretch",\n'
        '    "priorityScore": 0-100,\n'
        '    "fromExamSource": true/false,\n'
        '    "examRelevance": "high | medium | low",\n'
        '    "mentionedInNotes": true/false\n'
        "  }\n"
        "]",
    )
    sections.append(
        "Generate 6-12 study plan entries depending on breadth. Return ONLY valid JSON, "
        "no markdown or explanations. " + _JSON_KEYS_NOTE.format(language=language),
    )
    return "\n\n".join(sections)


def grading_prompt(question_prompt: str, *, language: str = DEFAULT_LANGUAGE) -> str:
    return (
        f'You are grading a student\'s response for the question "{question_prompt}". '
        "Evaluate correctness and gaps. Return:\n"
        "- summary (1-2 sentences)\n"
        "- correctness (one of: correct / partially correct / incorrect)\n"
        "- score 0-100\n"
        "- improvements (bullet list of 2-4 short tips)\n"
        "If the answer is empty, say that no answer was provided. Use $...$ for inline math and "
        "$$...$$ for block math. Answer in JSON. " + _JSON_KEYS_NOTE.format(language=language)
    )


def lecture_metadata_prompt(file_summaries: str, *, language: str = DEFAULT_LANGUAGE) -> str:
    return (
        "You are organizing lecture materials. Based on these file hints:\n"
        f"{file_summaries}\n"
        "Produce a short JSON object with:\n"
        '{\n  "title": "<concise lecture title>",\n  "description": "<1-2 sentence summary>"\n}\n'
        "Keep it compact and factual. " + _JSON_KEYS_NOTE.format(language=language)
    )


def practice_exam_prompt(  # noqa: PLR0913
    *,
    topics: str,
    question_count: int,
    exam_text: str = "",
    worksheet_text: str = "",
    category_name: str = "",
    language: str = DEFAULT_LANGUAGE,
) -> str:
    if category_name:
        intro = (
            f'You are generating a CLUSTER ASSESSMENT for the "{category_name}" topic cluster. '
            "It tests mastery of ALL topics in the cluster before the student moves on."
        )
        topics_label = f'Topics in the "{category_name}" cluster (test ALL of these):'
        guidance = (
            f"Create {question_count} questions covering multiple topics of the "
            f'"{category_name}" cluster. A score of 70% or higher indicates cluster mastery.'
        )
    else:
        intro = "You are generating a practice exam ONLY from topics the student has already PASSED."
        topics_label = "Passed topics (focus on these only):"
        guidance = (
            f"Create {question_count} questions. Mirror past exam patterns when exam text exists; "
            "otherwise use worksheets. Include the matching topic title for each question."
        )
    return "\n\n".join(
        [
            intro,
            f"{topics_label}\n{topics}",
            f"Past exams (highest fidelity):\n{exam_text or 'None provided'}",
            f"Worksheets / lecture materials (secondary):\n{worksheet_text or 'None provided'}",
            guidance,
            "Return JSON array with:\n"
            "[\n"
            "  {\n"
            '    "prompt": "Question text (concise, unambiguous)",\n'
            '    "answer": "Short expected answer",\n'
            '    "topicTitle": "Exact title from topics list",\n'
            '    "source": "exam | worksheet | material"\n'
            "  }\n"
            "]",
            "Keep answers brief but specific. " + _JSON_KEYS_NOTE.format(language=language),
        ],
    )


def tutor_system_prompt(material_context: str, *, language: str = DEFAULT_LANGUAGE) -> str:
    return (
        "You are an expert tutor using the Feynman Technique to help students deeply understand "
        "concepts.\n\n"
        "1. **Explain Simply**: break complex ideas into everyday language with analogies.\n"
        "2. **Identify Gaps**: probe gently when the student struggles.\n"
        "3. **Ask Smart Questions**: guide with Socratic questions instead of giving answers.\n"
        "4. **Encourage Teaching Back**: ask the student to explain concepts in their own words.\n"
        "5. **Build Incrementally**: make fundamentals solid before advanced material.\n\n"
        f"**Material Context:**\n{material_context}\n\n"
        "**Guidelines:**\n"
        "- Keep each turn to 1-2 short paragraphs and one concept at a time\n"
        "- End every response with exactly ONE check-in question, then wait for the reply\n"
        "- Invite the student to jot their answer on the canvas before continuing\n"
        "- Adapt explanations to the student's level; be warm but rigorous\n"
        f"- Always respond in {language}\n"
        "- Use Markdown; render math with $...$ (inline) and $$...$$ (block)."
    )


def _pct(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)
