import pytest
import sys
import os
import io
from pypdf import PdfWriter
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import app as app_module
import gemini_service
from gemini_service import AIServiceError, extract_json_array

def blank_pdf():
    writer = PdfWriter()
    writer.add_blank_page(width=72, height=72)
    buffer = io.BytesIO()
    writer.write(buffer)
    buffer.seek(0)
    return buffer

def fail(*args, **kwargs):
    raise AIServiceError("AI service unavailable")

# ---------- CHAT ----------

def test_chat(client, student, monkeypatch):
    received = {}
    def respond(message, context):
        received.update(message=message, context=context)
        return "**Photosynthesis** turns light into chemical energy."
    monkeypatch.setattr(app_module.gemini_service, "generate_response", respond)

    response = client.post('/api/ai-assistant/chat', headers=student["headers"],
                           json={"message": "What is photosynthesis?", "context": {"subject": "Biology"}})
    assert response.status_code == 200
    assert response.get_json()["data"]["message"].startswith("**Photosynthesis**")
    assert received["context"] == {"userRole": "student", "subject": "Biology", "hasAttachments": False}

def test_chat_with_attachments(client, teacher, monkeypatch):
    received = {}
    monkeypatch.setattr(app_module.gemini_service, "generate_response",
                        lambda message, context: received.setdefault("message", message))
    client.post('/api/ai-assistant/chat', headers=teacher["headers"], json={
        "message": "Summarize this",
        "context": {"attachments": [{"name": "notes.pdf", "type": "application/pdf", "content": "Cells divide."},
                                    {"name": "cell.png", "type": "image/png"}]}
    })
    assert "[PDF Document: notes.pdf]" in received["message"]
    assert "[Image: cell.png]" in received["message"]
    assert received["message"].endswith("User Question: Summarize this")

def test_chat_requires_message(client, student):
    response = client.post('/api/ai-assistant/chat', headers=student["headers"], json={"message": "  "})
    assert response.status_code == 400

def test_chat_ai_failure(client, student, monkeypatch):
    monkeypatch.setattr(app_module.gemini_service, "generate_response", fail)
    response = client.post('/api/ai-assistant/chat', headers=student["headers"], json={"message": "Hello"})
    assert response.status_code == 500
    assert response.get_json()["success"] is False

def test_chat_requires_login(client):
    response = client.post('/api/ai-assistant/chat', json={"message": "Hello"})
    assert response.status_code == 401

# ---------- QUIZ ----------

def test_generate_quiz(client, db, teacher, monkeypatch):
    monkeypatch.setattr(app_module.gemini_service, "generate_quiz",
                        lambda topic, difficulty, count: f"# {topic} quiz ({difficulty}, {count})")
    response = client.post('/api/ai-assistant/generate-quiz', headers=teacher["headers"],
                           json={"topic": "Fractions", "difficulty": "easy", "questionCount": 3})
    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["quiz"] == "# Fractions quiz (easy, 3)"
    assert data["questionCount"] == 3
    assert db.recent_activities.count_documents({"type": "quiz_generated"}) == 1

def test_student_cannot_generate_quiz(client, student):
    response = client.post('/api/ai-assistant/generate-quiz', headers=student["headers"], json={"topic": "Fractions"})
    assert response.status_code == 403

@pytest.mark.parametrize("payload", [{"topic": ""}, {"topic": "Fractions", "questionCount": 0},
                                     {"topic": "Fractions", "questionCount": 51},
                                     {"topic": "Fractions", "difficulty": "impossible"}])
def test_generate_quiz_invalid_input(client, teacher, payload):
    response = client.post('/api/ai-assistant/generate-quiz', headers=teacher["headers"], json=payload)
    assert response.status_code == 400

def test_generate_quiz_questions(client, teacher, classroom, monkeypatch):
    received = {}
    def questions(topic, count, context):
        received.update(topic=topic, count=count, context=context)
        return [{"question": "1/2 + 1/4?", "options": ["3/4", "1/6", "2/6", "1"], "correctAnswerIndex": 0}]
    monkeypatch.setattr(app_module.gemini_service, "generate_quiz_questions", questions)

    response = client.post('/api/ai-assistant/generate-quiz-questions', headers=teacher["headers"],
                           json={"topic": "Fractions", "questionCount": 1})
    assert response.status_code == 200
    assert response.get_json()["data"]["questions"][0]["correctAnswerIndex"] == 0
    assert received["context"] == {"name": "Test Teacher", "subjects": ["Mathematics"], "gradeLevels": ["10th"]}

def test_generate_quiz_questions_failure(client, teacher, monkeypatch):
    monkeypatch.setattr(app_module.gemini_service, "generate_quiz_questions", fail)
    response = client.post('/api/ai-assistant/generate-quiz-questions', headers=teacher["headers"],
                           json={"topic": "Fractions"})
    assert response.status_code == 500

def test_generate_summary(client, teacher, student, monkeypatch):
    monkeypatch.setattr(app_module.gemini_service, "generate_material_summary",
                        lambda content, material_type: "Key points.")
    response = client.post('/api/ai-assistant/generate-summary', headers=teacher["headers"],
                           json={"content": "Long text", "materialType": "text/plain"})
    assert response.get_json()["data"]["summary"] == "Key points."

    response = client.post('/api/ai-assistant/generate-summary', headers=student["headers"], json={"content": "x"})
    assert response.status_code == 403

# ---------- EXTRACT TEXT ----------

def test_extract_text_from_pdf(client, student):
    response = client.post('/api/ai-assistant/extract-text', headers=student["headers"],
                           content_type='multipart/form-data',
                           data={"file": (blank_pdf(), "blank.pdf", "application/pdf")})
    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["filename"] == "blank.pdf"
    assert data["text"] == ""
    assert data["fileSize"] > 0

def test_extract_text_rejects_other_types(client, student):
    response = client.post('/api/ai-assistant/extract-text', headers=student["headers"],
                           content_type='multipart/form-data',
                           data={"file": (io.BytesIO(b"plain"), "notes.txt", "text/plain")})
    assert response.status_code == 400

def test_extract_text_corrupt_pdf(client, student):
    response = client.post('/api/ai-assistant/extract-text', headers=student["headers"],
                           content_type='multipart/form-data',
                           data={"file": (io.BytesIO(b"not a pdf at all"), "broken.pdf", "application/pdf")})
    assert response.status_code == 500

# ---------- GEMINI SERVICE ----------

def test_extract_json_array_from_fenced_reply():
    reply = 'Here you go:\n```json\n[{"question": "Q", "options": ["a", "b", "c", "d"], "correctAnswerIndex": 2}]\n```'
    assert extract_json_array(reply)[0]["correctAnswerIndex"] == 2

@pytest.mark.parametrize("reply", ["no json here", "[not valid json]", ""])
def test_extract_json_array_failure(reply):
    with pytest.raises(AIServiceError):
        extract_json_array(reply)

def test_generate_quiz_questions_drops_malformed_items(monkeypatch):
    reply = """[
        {"question": "Good", "options": ["a", "b", "c", "d"], "correctAnswerIndex": 1},
        {"question": "Three options", "options": ["a", "b", "c"], "correctAnswerIndex": 0},
        {"question": "Index out of range", "options": ["a", "b", "c", "d"], "correctAnswerIndex": 4},
        {"question": "Boolean index", "options": ["a", "b", "c", "d"], "correctAnswerIndex": true}
    ]"""
    monkeypatch.setattr(gemini_service, "_generate", lambda prompt: reply)
    questions = gemini_service.generate_quiz_questions("Sets", 4)
    assert [q["question"] for q in questions] == ["Good"]

def test_generate_quiz_questions_all_invalid(monkeypatch):
    monkeypatch.setattr(gemini_service, "_generate", lambda prompt: '[{"question": "Q"}]')
    with pytest.raises(AIServiceError):
        gemini_service.generate_quiz_questions("Sets", 1)

def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.setattr(gemini_service, "_client", None)
    with pytest.raises(AIServiceError):
        gemini_service.get_client()

def test_system_prompt_depends_on_role():
    assert "teacher" in gemini_service.build_system_prompt("teacher")
    assert "student learn" in gemini_service.build_system_prompt("student")
    assert "File Analysis Instructions" in gemini_service.build_system_prompt("student", has_attachments=True)
