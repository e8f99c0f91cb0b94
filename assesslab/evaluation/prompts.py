"""
Prompt texts for OCR, question extraction, answer matching and evaluation.

Prompts are plain strings and small builder functions so tests can assert on
their content without calling a model.
"""
from __future__ import annotations

import json
from typing import Optional, Sequence

from assesslab.evaluation.ports import ExtractedQuestion, StudentInfo


# ----------------------------- OCR roles ------------------------------------

ANSWER_SHEET_SYSTEM = (
    "You are an OCR expert optimized for extracting handwritten answers from student exam sheets. "
    "Carefully identify all text, preserve formatting and structure. "
    "Focus on identifying sections of text that answer specific questions."
)

QUESTION_PAPER_SYSTEM = (
    "You are an OCR expert specialized in extracting text from exam question papers. "
    "Identify question numbers, section headers, and all text content accurately. "
    "Preserve the formatting and structure of the original document."
)

ANSWER_KEY_SYSTEM = (
    "You are an OCR expert specialized in extracting text from answer keys. "
    "Identify all answer content accurately, including question numbers and their corresponding answers. "
    "Preserve the formatting and structure."
)

ANSWER_SHEET_PROMPT = """Transcribe this student's answer sheet verbatim.

For each question in the document:
1. Identify the question number clearly.
2. Extract the complete answer text.
3. Format each answer on a new line starting with "Q<number>:" followed by the answer.
4. If the handwriting is difficult to read, make your best effort and indicate uncertainty with [?].
5. Maintain the structure of mathematical equations, diagram descriptions, and any special formatting.
6. If there are multiple pages, keep continuity between questions."""

QUESTION_PAPER_PROMPT = """Transcribe this question paper verbatim.

For each question in the document:
1. Identify the question number clearly.
2. Extract the complete question text along with any subparts.
3. Format each question on a new line starting with "Q<number>:" followed by the question.
4. Preserve mathematical equations, diagram descriptions, and any special formatting.
5. Include all instructions, marks allocations, and other relevant information."""

ANSWER_KEY_PROMPT = """Transcribe this answer key verbatim.

For each answer in the document:
1. Identify the question number clearly.
2. Extract the complete answer text along with any marking guidelines.
3. Format each answer on a new line starting with "Q<number>:" followed by the answer.
4. Preserve mathematical equations, diagrams, and any special formatting.
5. Include all marking schemes, points allocation, and other evaluation criteria."""

OCR_ROLES = {
    "student_answer": (ANSWER_SHEET_SYSTEM, ANSWER_SHEET_PROMPT),
    "question_paper": (QUESTION_PAPER_SYSTEM, QUESTION_PAPER_PROMPT),
    "answer_key": (ANSWER_KEY_SYSTEM, ANSWER_KEY_PROMPT),
}


# --------------------------- Question extraction ----------------------------

QUESTION_EXTRACTION_SYSTEM = """You are an expert AI assistant specialized in extracting structured questions from question papers. Your task is to extract questions from the provided text.

Instructions:
1. Carefully analyze the provided text to identify individual questions.
2. For each question, extract:
   * questionNumber: the number as printed on the paper
   * questionText: the complete text of the question
   * marks: the marks allocated to the question (number, or null if not stated)
   * topic: the primary topic the question belongs to
   * difficulty: Easy, Medium, or Hard
3. Return strictly one JSON object of the form {"questions": [ ... ]} and nothing else."""


def question_extraction_prompt(question_paper_text: str) -> str:
    return f"Please extract the structured questions from the following text:\n\n{question_paper_text}"


# ------------------------------ Answer matching -----------------------------

ANSWER_MATCH_SYSTEM = (
    "You are an AI assistant specialized in analyzing exam papers. Your task is to match student answers "
    "to their corresponding questions based on semantic similarity and contextual understanding."
)


def answer_match_prompt(question_text: str, student_answer_text: str) -> str:
    return f"""Here is a question paper and a student's answer sheet. The student's answers may not be in the same order as the questions, or they might not have clearly indicated which question they are answering.

QUESTION PAPER:
{question_text}

STUDENT'S ANSWER SHEET:
{student_answer_text}

Match each student answer to the corresponding question. Return a JSON array where every element has:
- "question": the question number and text from the question paper
- "answer": the corresponding answer text from the student's sheet
- "similarityScore": a number between 0 and 1 indicating how certain you are about this match

Output only the JSON array."""


# -------------------------------- Evaluation --------------------------------

NO_ANSWER_KEY = "No answer key provided (use your judgment to evaluate)"


def evaluation_system(test_id: str) -> str:
    return f"""You are an AI evaluator responsible for grading a student's answer sheet for test ID: {test_id}.
You will be given the questions, an optional answer key, and the student's answer sheet.

1. Understand each question and its marks allocation.
2. Use the answer key for correct answers and valuation criteria; when it is missing, use your own subject knowledge.
3. Match the student's answers to questions by number where possible, otherwise by meaning.
4. For each question assign marks for correctness and completeness and give brief remarks.
5. Be generous but objective. Award 0 marks for completely incorrect or unattempted answers.
6. Only evaluate answers for THIS specific test (ID: {test_id}).

Your evaluation must be returned as a single JSON object."""


def _output_contract(student_info: StudentInfo, match_methods: str) -> str:
    return f"""Format your evaluation as a JSON object with this structure:
{{
  "student_name": {json.dumps(student_info.name or "Unknown")},
  "roll_no": {json.dumps(student_info.roll_number or "Unknown")},
  "class": {json.dumps(student_info.class_name or "Unknown")},
  "subject": {json.dumps(student_info.subject or "Unknown")},
  "answers": [
    {{
      "question_no": "1",
      "question": "The question text",
      "answer": "Student's answer for this question",
      "expected_answer": "The expected answer",
      "score": [5, 10],
      "remarks": "Specific feedback on the answer",
      "confidence": 0.9,
      "match_method": {match_methods}
    }}
  ],
  "summary": {{
    "totalScore": [25, 50],
    "percentage": 50
  }}
}}
"score" is [assigned marks, maximum marks]. Return only the JSON object."""


def _student_block(student_info: StudentInfo) -> str:
    return json.dumps(
        {
            "name": student_info.name,
            "roll_number": student_info.roll_number,
            "class": student_info.class_name,
            "subject": student_info.subject,
        },
        indent=2,
    )


def _answer_key_block(answer_key_text: Optional[str], answer_key_topic: Optional[str]) -> str:
    if answer_key_text and answer_key_text.strip():
        return answer_key_text
    if answer_key_topic:
        return f"{NO_ANSWER_KEY}\nTopic for context: {answer_key_topic}"
    return NO_ANSWER_KEY


def evaluation_prompt_with_questions(
    questions: Sequence[ExtractedQuestion],
    answer_key_text: Optional[str],
    answer_key_topic: Optional[str],
    student_answer_text: str,
    student_info: StudentInfo,
) -> str:
    lines = []
    for idx, question in enumerate(questions, start=1):
        marks = f" [{question.marks:g} marks]" if question.marks is not None else ""
        lines.append(f"Question {question.number or idx}: {question.text}{marks}")
    return f"""Evaluate this student's answer sheet against the extracted questions and the answer key.

STUDENT INFORMATION:
{_student_block(student_info)}

EXTRACTED QUESTIONS:
{chr(10).join(lines)}

ANSWER KEY:
{_answer_key_block(answer_key_text, answer_key_topic)}

STUDENT'S ANSWER SHEET:
{student_answer_text}

Evaluate every extracted question, in the order listed, even if the student did not answer it.

{_output_contract(student_info, '"extracted_question"')}"""


def evaluation_prompt_raw(
    question_paper_text: Optional[str],
    answer_key_text: Optional[str],
    answer_key_topic: Optional[str],
    student_answer_text: str,
    student_info: StudentInfo,
) -> str:
    paper = question_paper_text if question_paper_text and question_paper_text.strip() else "No question paper provided"
    return f"""Evaluate this student's answer sheet against the provided question paper and answer key.

STUDENT INFORMATION:
{_student_block(student_info)}

QUESTION PAPER:
{paper}

ANSWER KEY:
{_answer_key_block(answer_key_text, answer_key_topic)}

STUDENT'S ANSWER SHEET:
{student_answer_text or "No student answer provided"}

For each question: identify its number and text, extract the student's answer, compare it with the answer key, assign marks and give specific feedback.

{_output_contract(student_info, '"direct_numbering" or "semantic_matching"')}"""


CONNECTION_TEST_MESSAGES = [{"role": "user", "content": "Test connection"}]
