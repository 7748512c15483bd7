from reviewflow.models.account import BusinessMembership, User
from reviewflow.models.business import Business
from reviewflow.models.audit_log import AuditLog
from reviewflow.models.customer import Customer, CustomerConsent
from reviewflow.models.review_request import ReviewRequest
from reviewflow.models.campaign import (
    CampaignExecution,
    CampaignSequence,
    CampaignStep,
    CampaignStepExecution,
)
from reviewflow.models.feedback import FeedbackGateSubmission, PrivateFeedback
