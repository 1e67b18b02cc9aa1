from .appointment import Appointment
from .appointment_request import AppointmentRequest
from .chat import ChatMessage
from .user_profile import UserProfile
