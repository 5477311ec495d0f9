from models.bell_schedule import BellSchedule
from models.provider_work_schedule import ProviderWorkSchedule
from models.schedule_session import ScheduleSession
from models.school import School
from models.school_hours import SchoolHours
from models.special_activity import SpecialActivity
from models.student import Student

__all__ = [
	"BellSchedule",
	"ProviderWorkSchedule",
	"ScheduleSession",
	"School",
	"SchoolHours",
	"SpecialActivity",
	"Student",
]
