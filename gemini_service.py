import json
import logging
import os
import re

from google import genai

logger = logging.getLogger(__name__)

DEFAULT_MODEL = 'gemini-2.5-flash'

MARKDOWN_INSTRUCTION = (
    "\n\n**IMPORTANT**: Always format your response using Markdown. Use headings, bold text, "
    "lists, and other formatting elements to create a clear, readable, and well-structured response."
)

_client = None


class AIServiceError(Exception):
    """Raised when the generative service fails or returns unusable output."""


def get_client():
    global _client
    if _client is None:
        api_key = os.getenv('GEMINI_API_KEY')
        if not api_key:
            raise AIServiceError("GEMINI_API_KEY is not configured")
        _client = genai.Client(api_key=api_key)
    return _client


def get_model_name():
    return os.getenv('GEMINI_MODEL', DEFAULT_MODEL).replace('models/', '')


def _generate(prompt):
    try:
        response = get_client().models.generate_content(model=get_model_name(), contents=prompt)
    except AIServiceError:
        raise
    except Exception as e:
        logger.error("Gemini API error: %s", e)
        raise AIServiceError("Failed to generate AI response") from e
    if not response.text:
        raise AIServiceError("Empty response from AI service")
    return response.text


def build_system_prompt(user_role, has_attachments=False):
    if user_role == 'teacher':
        prompt = ("You are an AI assistant helping a teacher with educational tasks. You can help with "
                  "creating assignments, generating quiz questions, explaining concepts, providing teaching "
                  "strategies, and analyzing student performance. Be professional and educational.")
        if has_attachments:
            prompt += " You can also analyze uploaded files including PDFs and images to help with educational content."
    else:
        prompt = ("You are an AI tutor helping a student learn. You can explain concepts, help with homework, "
                  "provide study tips, and answer questions. Be encouraging, clear, and educational. "
                  "Break down complex topics into simple steps.")
        if has_attachments:
            prompt += (" You can analyze uploaded files like PDFs and images to help explain concepts and "
                       "answer questions about the content.")
    prompt += MARKDOWN_INSTRUCTION

    if has_attachments:
        prompt += ("\n\n**File Analysis Instructions**: When analyzing uploaded files, provide detailed "
                   "explanations about the content. For PDFs, summarize key points and answer questions "
                   "about the text. For images, describe what you see and relate it to the educational context.")
    return prompt


def generate_response(message, context=None):
    """Chat completion in Markdown for the caller's role."""
    context = context or {}
    system_prompt = build_system_prompt(context.get('userRole'), context.get('hasAttachments', False))
    if context.get('subject'):
        system_prompt += f"\n\nThe current subject is {context['subject']}."
    return _generate(f"{system_prompt}\n\nUser message: {message}")


def generate_quiz(topic, difficulty='medium', question_count=5):
    prompt = f"""
        Generate a {difficulty} difficulty quiz about "{topic}" with {question_count} questions.

        Create a comprehensive quiz that includes:
        1. A mix of multiple choice questions (4 options each)
        2. Short answer questions
        3. Clear, educational content appropriate for the difficulty level

        Format your response as a well-structured quiz with:
        - A title for the quiz
        - Clear question numbering
        - Multiple choice options labeled A, B, C, D
        - Correct answers provided at the end

        **IMPORTANT**: Format your response in clean, readable text that can be easily displayed to students.
    """
    return _generate(prompt)


def extract_json_array(text):
    """Pull the first JSON array out of a model reply, tolerating code fences around it."""
    match = re.search(r'\[[\s\S]*\]', text or '')
    if not match:
        raise AIServiceError("Failed to generate valid JSON for the quiz")
    try:
        data = json.loads(match.group(0), strict=False)
    except json.JSONDecodeError as e:
        raise AIServiceError("Failed to generate valid JSON for the quiz") from e
    if not isinstance(data, list):
        raise AIServiceError("Failed to generate valid JSON for the quiz")
    return data


def generate_quiz_questions(topic, question_count=5, teacher_context=None):
    teacher_context = teacher_context or {}
    instruction = "You are an expert quiz generator for a sophisticated educational platform."
    if teacher_context.get('name'):
        instruction += f" You are assisting a teacher named {teacher_context['name']}."
    if teacher_context.get('subjects'):
        instruction += f" They primarily teach {' and '.join(teacher_context['subjects'])}."
    if teacher_context.get('gradeLevels'):
        instruction += f" The quiz must be tailored for {' and '.join(teacher_context['gradeLevels'])} grade students."
    else:
        instruction += " The quiz should be tailored for a general high school level."

    prompt = f"""
        {instruction}

        Generate a quiz about the topic: "{topic}".
        Create exactly {question_count} multiple-choice questions. The difficulty, vocabulary, and complexity
        of the questions must be appropriate for the specified grade level(s).

        **CRITICAL**: Your output must be ONLY a single, valid JSON array of objects. Your entire response
        must start with '[' and end with ']'.

        The JSON array must follow this exact structure:
        [
          {{
            "question": "The text of the first question",
            "options": ["Option A text", "Option B text", "Option C text", "Option D text"],
            "correctAnswerIndex": 0
          }}
        ]
    """
    questions = extract_json_array(_generate(prompt))

    valid = []
    for item in questions:
        if not isinstance(item, dict):
            continue
        options = item.get('options')
        index = item.get('correctAnswerIndex')
        if not item.get('question') or not isinstance(options, list) or len(options) != 4:
            continue
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < 4:
            continue
        valid.append({"question": item['question'], "options": options, "correctAnswerIndex": index})
    if not valid:
        raise AIServiceError("AI service returned no usable quiz questions")
    return valid


def generate_material_summary(content, material_type):
    prompt = (f"Please provide a concise summary of this {material_type or 'document'} content, "
              f"highlighting the key points a student should remember.\n\n{content[:2000]}")
    return _generate(prompt)
