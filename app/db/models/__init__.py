from app.db.models.otp import OTPRecordRow

__all__ = ["OTPRecordRow"]
