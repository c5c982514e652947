"""
Hospital API - Schemas

Request payloads and the public shape of each MongoDB collection.
Documents are stored with snake_case keys; the API speaks camelCase, so every
model here accepts either and serializes by alias.
"""

from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

Role = Literal['patient', 'doctor', 'admin']
Gender = Literal['male', 'female', 'other']
BloodGroup = Literal['A+', 'A-', 'B+', 'B-', 'AB+', 'AB-', 'O+', 'O-']
Genotype = Literal['AA', 'AS', 'AC', 'SS', 'SC', 'CC']
Weekday = Literal['monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday']
AppointmentStatus = Literal['scheduled', 'confirmed', 'checked-in', 'in-progress', 'completed', 'cancelled', 'no-show']
AppointmentType = Literal['consultation', 'follow-up', 'emergency', 'routine-checkup', 'procedure', 'surgery']
PrescriptionStatus = Literal['active', 'completed', 'cancelled', 'expired']
PaymentMethod = Literal['cash', 'card', 'insurance', 'online']

TIME_PATTERN = r'^([01][0-9]|2[0-3]):[0-5][0-9]$'
PHONE_PATTERN = r'^\+?[0-9]{10,15}$'


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Shared value objects
class EmergencyContact(CamelModel):
    name: str = Field(..., min_length=1)
    relationship: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=7)
    email: Optional[EmailStr] = None


class Measurement(CamelModel):
    value: float = Field(..., gt=0)
    unit: str


class Allergy(CamelModel):
    allergen: str
    severity: Optional[Literal['mild', 'moderate', 'severe']] = None
    reaction: Optional[str] = None


class TimeWindow(CamelModel):
    start: str = Field(..., pattern=TIME_PATTERN)
    end: str = Field(..., pattern=TIME_PATTERN)

    @model_validator(mode='after')
    def start_before_end(self):
        if self.start >= self.end:
            raise ValueError('window start must be before its end')
        return self


# Auth payloads
class RegisterRequest(CamelModel):
    role: Role
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=8)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    gender: Optional[Gender] = None
    date_of_birth: Optional[date] = None
    address: Optional[str] = Field(None, max_length=200)
    # patient
    blood_group: Optional[BloodGroup] = None
    genotype: Optional[Genotype] = None
    emergency_contact: Optional[EmergencyContact] = None
    height: Optional[Measurement] = None
    weight: Optional[Measurement] = None
    # doctor
    specialization: Optional[str] = None
    license_number: Optional[str] = None
    consultation_fee: Optional[float] = Field(None, ge=0)
    # doctor and admin
    department: Optional[str] = None

    @field_validator('date_of_birth')
    @classmethod
    def not_in_future(cls, value: Optional[date]):
        if value is not None and value > date.today():
            raise ValueError('Date of birth cannot be in the future')
        return value


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class TokenRequest(CamelModel):
    token: str = Field(..., min_length=1)


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1)


class ForgotPasswordRequest(CamelModel):
    email: EmailStr


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1)
    password: str


class UpdatePasswordRequest(CamelModel):
    current_password: str
    new_password: str


class UpdateProfileRequest(CamelModel):
    first_name: Optional[str] = Field(None, min_length=2, max_length=50)
    last_name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[str] = Field(None, max_length=200)
    gender: Optional[Gender] = None
    date_of_birth: Optional[date] = None


# Patient / doctor management payloads
class PatientUpdate(UpdateProfileRequest):
    blood_group: Optional[BloodGroup] = None
    genotype: Optional[Genotype] = None
    emergency_contact: Optional[EmergencyContact] = None
    height: Optional[Measurement] = None
    weight: Optional[Measurement] = None
    allergies: Optional[List[Allergy]] = None


class AssignDoctorRequest(CamelModel):
    doctor_id: str


class DoctorUpdate(UpdateProfileRequest):
    specialization: Optional[str] = None
    department: Optional[str] = None
    consultation_fee: Optional[float] = Field(None, ge=0)


class ScheduleUpdate(CamelModel):
    availability: Dict[Weekday, List[TimeWindow]]
    slot_duration: int = Field(30, ge=5, le=240)


# Appointments
class AppointmentCreate(CamelModel):
    doctor_id: str
    patient_id: Optional[str] = None
    appointment_date: date
    appointment_time: str = Field(..., pattern=TIME_PATTERN)
    type: AppointmentType = 'consultation'
    reason: str = Field(..., min_length=10, max_length=500)
    symptoms: Optional[str] = Field(None, max_length=1000)
    notes: Optional[str] = Field(None, max_length=500)


class AppointmentUpdate(CamelModel):
    appointment_date: Optional[date] = None
    appointment_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    reason: Optional[str] = Field(None, min_length=10, max_length=500)
    symptoms: Optional[str] = Field(None, max_length=1000)
    notes: Optional[str] = Field(None, max_length=500)


class CancelRequest(CamelModel):
    reason: Optional[str] = Field(None, max_length=500)


class CompleteRequest(CamelModel):
    notes: Optional[str] = Field(None, max_length=2000)
    is_paid: Optional[bool] = None
    payment_method: Optional[PaymentMethod] = None


# Clinical records
class MedicalRecordCreate(CamelModel):
    patient_id: str
    appointment_id: Optional[str] = None
    diagnosis: str = Field(..., min_length=2)
    symptoms: List[str] = []
    treatment: Optional[str] = None
    notes: Optional[str] = None
    visit_date: Optional[date] = None


class MedicalRecordUpdate(CamelModel):
    diagnosis: Optional[str] = Field(None, min_length=2)
    symptoms: Optional[List[str]] = None
    treatment: Optional[str] = None
    notes: Optional[str] = None


class Medication(CamelModel):
    name: str
    dosage: str
    frequency: str
    duration: Optional[str] = None
    instructions: Optional[str] = None


class PrescriptionCreate(CamelModel):
    patient_id: str
    medical_record_id: Optional[str] = None
    medications: List[Medication] = Field(..., min_length=1)
    notes: Optional[str] = None


class PrescriptionUpdate(CamelModel):
    medications: Optional[List[Medication]] = Field(None, min_length=1)
    notes: Optional[str] = None
    status: Optional[PrescriptionStatus] = None


# Admin / analytics
class ClearCacheRequest(CamelModel):
    cache_type: Optional[str] = None


class ReviewRequest(CamelModel):
    notes: Optional[str] = None


class SuspiciousRequest(CamelModel):
    reason: str = Field(..., min_length=3)


# Public views of stored documents
class DocumentOut(CamelModel):
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserBaseOut(DocumentOut):
    first_name: str
    last_name: str
    email: EmailStr
    phone: Optional[str] = None
    gender: Optional[Gender] = None
    date_of_birth: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    last_login: Optional[datetime] = None


class PatientOut(UserBaseOut):
    role: Literal['patient']
    blood_group: Optional[BloodGroup] = None
    genotype: Optional[Genotype] = None
    emergency_contact: Optional[EmergencyContact] = None
    height: Optional[Measurement] = None
    weight: Optional[Measurement] = None
    allergies: List[Allergy] = []
    assigned_doctor: Optional[str] = None
    registration_number: Optional[str] = None


class DoctorOut(UserBaseOut):
    role: Literal['doctor']
    specialization: Optional[str] = None
    license_number: Optional[str] = None
    department: Optional[str] = None
    consultation_fee: float = 0
    availability: Dict[str, List[TimeWindow]] = {}
    slot_duration: int = 30
    employee_id: Optional[str] = None


class AdminOut(UserBaseOut):
    role: Literal['admin']
    department: Optional[str] = None
    employee_id: Optional[str] = None


UserOut = Annotated[Union[PatientOut, DoctorOut, AdminOut], Field(discriminator='role')]
_user_adapter = TypeAdapter(UserOut)


class AppointmentOut(DocumentOut):
    appointment_number: str
    patient_id: str
    doctor_id: str
    appointment_date: str
    appointment_time: str
    type: AppointmentType = 'consultation'
    status: AppointmentStatus
    reason: str
    symptoms: Optional[str] = None
    notes: Optional[str] = None
    consultation_fee: float = 0
    is_paid: bool = False
    payment_method: Optional[PaymentMethod] = None
    check_in_time: Optional[datetime] = None
    consultation_start_time: Optional[datetime] = None
    consultation_end_time: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None


class MedicalRecordOut(DocumentOut):
    record_number: str
    patient_id: str
    doctor_id: str
    appointment_id: Optional[str] = None
    diagnosis: str
    symptoms: List[str] = []
    treatment: Optional[str] = None
    notes: Optional[str] = None
    visit_date: Optional[str] = None


class PrescriptionOut(DocumentOut):
    prescription_number: str
    patient_id: str
    doctor_id: str
    medical_record_id: Optional[str] = None
    medications: List[Medication]
    notes: Optional[str] = None
    status: PrescriptionStatus = 'active'
    dispensed_at: Optional[datetime] = None
    dispensed_by: Optional[str] = None


class NotificationOut(DocumentOut):
    recipient_id: str
    type: str
    category: str
    subject: Optional[str] = None
    message: str
    is_read: bool = False
    read_at: Optional[datetime] = None
    sent: bool = False


class AuditLogOut(DocumentOut):
    user: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    description: str
    status: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    severity: str
    category: str
    is_suspicious: bool = False
    suspicious_reason: Optional[str] = None
    is_reviewed: bool = False
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None


def _with_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(doc)
    if '_id' in data:
        data['id'] = str(data.pop('_id'))
    return data


def to_out(model, doc: Dict[str, Any]):
    return model.model_validate(_with_id(doc))


def user_out(doc: Dict[str, Any]):
    """Public view of a user document; never carries hashes or tokens."""
    return _user_adapter.validate_python(_with_id(doc))
