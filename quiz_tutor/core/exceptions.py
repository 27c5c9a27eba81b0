"""
Custom exceptions and error handling for the Quiz Tutor service
"""
from typing import Optional, Dict, Any


class QuizTutorException(Exception):
    """Base exception for the Quiz Tutor service"""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidInput(QuizTutorException):
    """Malformed call shape: length mismatch, empty quiz, bad generation settings"""
    status_code = 400


class OracleUnavailable(QuizTutorException):
    """The grading oracle failed or returned an unusable response"""
    status_code = 502


class GenerationShortfall(QuizTutorException):
    """Question generation could not reach the minimum acceptable count"""
    status_code = 422

    def __init__(self, message: str, achieved: int, requested: int):
        super().__init__(message, {"achieved": achieved, "requested": requested})
        self.achieved = achieved
        self.requested = requested


class MalformedCandidate(QuizTutorException):
    """A generated candidate question failed validation"""
    status_code = 422

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Malformed candidate: {reason}", details)
        self.reason = reason


class LLMError(QuizTutorException):
    """Error during LLM operations"""
    status_code = 502


class DatabaseError(QuizTutorException):
    """Database operation error"""
    pass


class ConfigurationError(QuizTutorException):
    """Configuration error"""
    pass
