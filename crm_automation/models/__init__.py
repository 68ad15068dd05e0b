from crm_automation.models.user import User
from crm_automation.models.crm import (
    Activity,
    Company,
    Contact,
    Deal,
    Notification,
    Pipeline,
    PipelineStage,
    Task,
)
from crm_automation.models.automation import AutomationLog, AutomationRule
from crm_automation.models.queue import DeadLetterJob, IdempotencyKey
from crm_automation.models.analytics import PipelineSnapshot, PipelineStageStat
