"""
Request bodies for the HTTP API.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ProcessBatchRequest(BaseModel):
    """Start processing an uploaded batch"""
    job_id: str = Field(..., min_length=1)
    template_id: Optional[str] = Field(None, description="Certificate template; default template when omitted")
    send_emails: bool = Field(False, description="Email each issued certificate to its recipient")


class IssueCertificateRequest(BaseModel):
    """Issue a single certificate outside of a batch"""

    model_config = ConfigDict(populate_by_name=True)

    student_name: str = Field(..., alias="studentName")
    student_id: str = Field(..., alias="studentId")
    degree: str
    institution: str
    issue_date: str = Field(..., alias="issueDate")
    email: Optional[str] = None
    template_id: Optional[str] = Field(None, alias="templateId")
    send_email: bool = Field(False, alias="sendEmail")

    def record_data(self):
        """Row mapping with canonical keys"""
        return {
            "student_name": self.student_name,
            "student_id": self.student_id,
            "degree": self.degree,
            "institution": self.institution,
            "issue_date": self.issue_date,
            "email": self.email or "",
        }
