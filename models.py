from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

ROLES = ('ADMIN', 'STAFF', 'STUDENT')
COURSE_CATEGORIES = ('HSMC', 'BSC', 'ESC', 'PEC', 'OEC', 'EEC')
COURSE_TYPES = ('THEORY', 'INTEGRATED', 'PRACTICAL', 'EXPERIENTIAL LEARNING')
CO_TYPES = ('THEORY', 'PRACTICAL', 'EXPERIENTIAL')
DAYS = ('MON', 'TUE', 'WED', 'THU', 'FRI', 'SAT')
ATTENDANCE_STATUSES = ('P', 'A', 'OD')
REQUEST_STATUSES = ('PENDING', 'ACCEPTED', 'REJECTED', 'WITHDRAWN')
CBCS_TYPES = ('FCFS', 'OPTIMAL')
ELECTIVE_CATEGORIES = ('OEC', 'PEC')
TRANSFER_ACTIONS = ('approved', 'rejected')

DEFAULT_DEPARTMENTS = [
    ('CSE', 'Computer Science Engineering'),
    ('ECE', 'Electronics and Communication Engineering'),
    ('MECH', 'Mechanical Engineering'),
    ('IT', 'Information Technology'),
    ('EEE', 'Electrical and Electronics Engineering'),
    ('AIDS', 'Artificial Intelligence and Data Science'),
]


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value is not None else None


class Department(db.Model):
    __tablename__ = 'department'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(10), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def to_dict(self):
        return {'departmentId': self.id, 'deptCode': self.code, 'deptName': self.name}


class User(db.Model):
    __tablename__ = 'users'
    __table_args__ = (db.UniqueConstraint('staff_id', 'department_id', name='uq_staff_department'),)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(10), nullable=False, default='STAFF')
    staff_id = db.Column(db.String(6))
    department_id = db.Column(db.Integer, db.ForeignKey('department.id'))
    roll_number = db.Column(db.String(20), db.ForeignKey('student.roll_number'))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    department = db.relationship('Department')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
            'staffId': self.staff_id,
            'departmentId': self.department_id,
            'deptCode': self.department.code if self.department else None,
            'rollNumber': self.roll_number,
        }


class Batch(db.Model):
    __tablename__ = 'batch'
    __table_args__ = (db.UniqueConstraint('degree', 'branch', 'batch', name='uq_batch'),)

    id = db.Column(db.Integer, primary_key=True)
    degree = db.Column(db.String(50), nullable=False)
    branch = db.Column(db.String(100), nullable=False)
    batch = db.Column(db.String(4), nullable=False)
    batch_years = db.Column(db.String(9), nullable=False)
    regulation_id = db.Column(db.Integer, db.ForeignKey('regulation.id'))
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    regulation = db.relationship('Regulation')
    semesters = db.relationship('Semester', backref='batch', lazy=True,
                                order_by='Semester.semester_number')

    def to_dict(self):
        return {
            'batchId': self.id,
            'degree': self.degree,
            'branch': self.branch,
            'batch': self.batch,
            'batchYears': self.batch_years,
            'regulationId': self.regulation_id,
            'isActive': self.is_active,
        }


class Semester(db.Model):
    __tablename__ = 'semester'
    __table_args__ = (db.UniqueConstraint('batch_id', 'semester_number', name='uq_semester'),)

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey('batch.id'), nullable=False)
    semester_number = db.Column(db.Integer, nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    courses = db.relationship('Course', backref='semester', lazy=True)

    def to_dict(self):
        return {
            'semesterId': self.id,
            'batchId': self.batch_id,
            'semesterNumber': self.semester_number,
            'startDate': _iso(self.start_date),
            'endDate': _iso(self.end_date),
            'isActive': self.is_active,
            'degree': self.batch.degree if self.batch else None,
            'branch': self.batch.branch if self.batch else None,
            'batch': self.batch.batch if self.batch else None,
        }


class Course(db.Model):
    __tablename__ = 'course'

    id = db.Column(db.Integer, primary_key=True)
    course_code = db.Column(db.String(20), unique=True, nullable=False)
    semester_id = db.Column(db.Integer, db.ForeignKey('semester.id'), nullable=False)
    course_title = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(10), nullable=False)
    type = db.Column(db.String(30), nullable=False)
    lecture_hours = db.Column(db.Integer, default=0, nullable=False)
    tutorial_hours = db.Column(db.Integer, default=0, nullable=False)
    practical_hours = db.Column(db.Integer, default=0, nullable=False)
    experiential_hours = db.Column(db.Integer, default=0, nullable=False)
    total_contact_periods = db.Column(db.Integer, default=0, nullable=False)
    credits = db.Column(db.Integer, default=0, nullable=False)
    min_mark = db.Column(db.Integer, default=0, nullable=False)
    max_mark = db.Column(db.Integer, default=100, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    sections = db.relationship('Section', backref='course', lazy=True, order_by='Section.id')

    def to_dict(self):
        return {
            'courseId': self.id,
            'courseCode': self.course_code,
            'semesterId': self.semester_id,
            'courseTitle': self.course_title,
            'category': self.category,
            'type': self.type,
            'lectureHours': self.lecture_hours,
            'tutorialHours': self.tutorial_hours,
            'practicalHours': self.practical_hours,
            'experientialHours': self.experiential_hours,
            'totalContactPeriods': self.total_contact_periods,
            'credits': self.credits,
            'minMark': self.min_mark,
            'maxMark': self.max_mark,
            'isActive': self.is_active,
        }


class Section(db.Model):
    __tablename__ = 'section'
    __table_args__ = (db.UniqueConstraint('course_id', 'section_name', name='uq_section'),)

    id = db.Column(db.Integer, primary_key=True)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    section_name = db.Column(db.String(20), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def to_dict(self):
        return {'sectionId': self.id, 'courseId': self.course_id, 'sectionName': self.section_name}


class Student(db.Model):
    __tablename__ = 'student'

    roll_number = db.Column(db.String(20), primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120))
    batch_id = db.Column(db.Integer, db.ForeignKey('batch.id'), nullable=False)
    department_id = db.Column(db.Integer, db.ForeignKey('department.id'))
    semester_number = db.Column(db.Integer, default=1, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    batch = db.relationship('Batch')
    department = db.relationship('Department')

    def to_dict(self):
        return {
            'rollnumber': self.roll_number,
            'name': self.name,
            'email': self.email,
            'batchId': self.batch_id,
            'departmentId': self.department_id,
            'semesterNumber': self.semester_number,
            'degree': self.batch.degree if self.batch else None,
            'branch': self.batch.branch if self.batch else None,
            'batch': self.batch.batch if self.batch else None,
        }


class StudentCourse(db.Model):
    __tablename__ = 'student_course'
    __table_args__ = (db.UniqueConstraint('roll_number', 'course_id', name='uq_student_course'),)

    id = db.Column(db.Integer, primary_key=True)
    roll_number = db.Column(db.String(20), db.ForeignKey('student.roll_number'), nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False)

    student = db.relationship('Student')
    course = db.relationship('Course')
    section = db.relationship('Section')

    def to_dict(self):
        return {
            'studentCourseId': self.id,
            'rollnumber': self.roll_number,
            'courseId': self.course_id,
            'courseCode': self.course.course_code if self.course else None,
            'courseTitle': self.course.course_title if self.course else None,
            'sectionId': self.section_id,
            'sectionName': self.section.section_name if self.section else None,
        }


class StaffCourse(db.Model):
    __tablename__ = 'staff_course'
    __table_args__ = (db.UniqueConstraint('user_id', 'course_id', 'section_id', name='uq_staff_course'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False)

    user = db.relationship('User')
    course = db.relationship('Course')
    section = db.relationship('Section')

    def to_dict(self):
        return {
            'staffCourseId': self.id,
            'userId': self.user_id,
            'staffName': self.user.name if self.user else None,
            'courseId': self.course_id,
            'courseCode': self.course.course_code if self.course else None,
            'courseTitle': self.course.course_title if self.course else None,
            'sectionId': self.section_id,
            'sectionName': self.section.section_name if self.section else None,
        }


class CourseRequest(db.Model):
    __tablename__ = 'course_request'
    __table_args__ = (db.UniqueConstraint('user_id', 'course_id', name='uq_course_request'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    status = db.Column(db.String(10), default='PENDING', nullable=False)
    requested_at = db.Column(db.DateTime, default=utcnow)
    resolved_at = db.Column(db.DateTime)

    user = db.relationship('User')
    course = db.relationship('Course')

    def to_dict(self):
        return {
            'requestId': self.id,
            'userId': self.user_id,
            'staffName': self.user.name if self.user else None,
            'courseId': self.course_id,
            'courseCode': self.course.course_code if self.course else None,
            'courseTitle': self.course.course_title if self.course else None,
            'status': self.status,
            'requestedAt': _iso(self.requested_at),
            'resolvedAt': _iso(self.resolved_at),
        }


class CoursePartition(db.Model):
    __tablename__ = 'course_partition'

    id = db.Column(db.Integer, primary_key=True)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), unique=True, nullable=False)
    theory_count = db.Column(db.Integer, default=0, nullable=False)
    practical_count = db.Column(db.Integer, default=0, nullable=False)
    experiential_count = db.Column(db.Integer, default=0, nullable=False)

    def to_dict(self):
        return {
            'partitionId': self.id,
            'courseId': self.course_id,
            'theoryCount': self.theory_count,
            'practicalCount': self.practical_count,
            'experientialCount': self.experiential_count,
        }


class CourseOutcome(db.Model):
    __tablename__ = 'course_outcome'
    __table_args__ = (db.UniqueConstraint('course_id', 'co_number', name='uq_course_outcome'),)

    id = db.Column(db.Integer, primary_key=True)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    co_number = db.Column(db.String(10), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    co_type = db.Column(db.String(15), nullable=False)

    tools = db.relationship('COTool', backref='course_outcome', lazy=True, order_by='COTool.id',
                            cascade='all, delete-orphan')

    def to_dict(self, include_tools=False):
        data = {
            'coId': self.id,
            'courseId': self.course_id,
            'coNumber': self.co_number,
            'coType': self.co_type,
        }
        if include_tools:
            data['tools'] = [tool.to_dict() for tool in self.tools]
        return data


class COTool(db.Model):
    __tablename__ = 'co_tool'

    id = db.Column(db.Integer, primary_key=True)
    co_id = db.Column(db.Integer, db.ForeignKey('course_outcome.id'), nullable=False)
    tool_name = db.Column(db.String(100), nullable=False)
    weightage = db.Column(db.Integer, nullable=False)
    max_marks = db.Column(db.Integer, nullable=False)

    marks = db.relationship('StudentToolMark', backref='tool', lazy=True, cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'toolId': self.id,
            'coId': self.co_id,
            'toolName': self.tool_name,
            'weightage': self.weightage,
            'maxMarks': self.max_marks,
        }


class StudentToolMark(db.Model):
    __tablename__ = 'student_tool_mark'
    __table_args__ = (db.UniqueConstraint('tool_id', 'roll_number', name='uq_student_tool_mark'),)

    id = db.Column(db.Integer, primary_key=True)
    tool_id = db.Column(db.Integer, db.ForeignKey('co_tool.id'), nullable=False)
    roll_number = db.Column(db.String(20), db.ForeignKey('student.roll_number'), nullable=False)
    marks_obtained = db.Column(db.Float, nullable=False)


class StudentGrade(db.Model):
    __tablename__ = 'student_grade'
    __table_args__ = (db.UniqueConstraint('roll_number', 'course_id', name='uq_student_grade'),)

    id = db.Column(db.Integer, primary_key=True)
    roll_number = db.Column(db.String(20), db.ForeignKey('student.roll_number'), nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    grade = db.Column(db.String(2), nullable=False)

    course = db.relationship('Course')


class StudentSemesterGPA(db.Model):
    __tablename__ = 'student_semester_gpa'
    __table_args__ = (db.UniqueConstraint('roll_number', 'semester_id', name='uq_student_semester_gpa'),)

    id = db.Column(db.Integer, primary_key=True)
    roll_number = db.Column(db.String(20), db.ForeignKey('student.roll_number'), nullable=False)
    semester_id = db.Column(db.Integer, db.ForeignKey('semester.id'), nullable=False)
    gpa = db.Column(db.Float)
    cgpa = db.Column(db.Float)

    semester = db.relationship('Semester')


class Timetable(db.Model):
    __tablename__ = 'timetable'

    id = db.Column(db.Integer, primary_key=True)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'))
    day_of_week = db.Column(db.String(3), nullable=False)
    period_number = db.Column(db.Integer, nullable=False)
    department_id = db.Column(db.Integer, db.ForeignKey('department.id'))
    semester_id = db.Column(db.Integer, db.ForeignKey('semester.id'), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    course = db.relationship('Course')
    section = db.relationship('Section')

    def to_dict(self):
        return {
            'timetableId': self.id,
            'courseId': self.course_id,
            'courseCode': self.course.course_code if self.course else None,
            'courseTitle': self.course.course_title if self.course else None,
            'sectionId': self.section_id,
            'sectionName': self.section.section_name if self.section else None,
            'dayOfWeek': self.day_of_week,
            'periodNumber': self.period_number,
            'departmentId': self.department_id,
            'semesterId': self.semester_id,
        }


class PeriodAttendance(db.Model):
    __tablename__ = 'period_attendance'
    __table_args__ = (db.UniqueConstraint('roll_number', 'course_id', 'attendance_date', 'period_number',
                                          name='uq_period_attendance'),)

    id = db.Column(db.Integer, primary_key=True)
    roll_number = db.Column(db.String(20), db.ForeignKey('student.roll_number'), nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False)
    semester_number = db.Column(db.Integer, nullable=False)
    day_of_week = db.Column(db.String(3), nullable=False)
    period_number = db.Column(db.Integer, nullable=False)
    attendance_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(2), nullable=False)
    updated_by = db.Column(db.String(5), default='staff', nullable=False)
    marked_by = db.Column(db.Integer, db.ForeignKey('users.id'))

    def to_dict(self):
        return {
            'rollnumber': self.roll_number,
            'courseId': self.course_id,
            'sectionId': self.section_id,
            'dayOfWeek': self.day_of_week,
            'periodNumber': self.period_number,
            'attendanceDate': _iso(self.attendance_date),
            'status': self.status,
            'updatedBy': self.updated_by,
        }


class ElectiveBucket(db.Model):
    __tablename__ = 'elective_bucket'
    __table_args__ = (db.UniqueConstraint('semester_id', 'bucket_number', name='uq_elective_bucket'),)

    id = db.Column(db.Integer, primary_key=True)
    semester_id = db.Column(db.Integer, db.ForeignKey('semester.id'), nullable=False)
    bucket_number = db.Column(db.Integer, nullable=False)
    bucket_name = db.Column(db.String(100), nullable=False)

    entries = db.relationship('ElectiveBucketCourse', backref='bucket', lazy=True,
                              cascade='all, delete-orphan')

    @property
    def label(self):
        return f"Elective Bucket {self.bucket_number} - {self.bucket_name}"

    def to_dict(self):
        return {
            'bucketId': self.id,
            'semesterId': self.semester_id,
            'bucketNumber': self.bucket_number,
            'bucketName': self.bucket_name,
            'courses': [entry.course.to_dict() for entry in self.entries],
        }


class ElectiveBucketCourse(db.Model):
    __tablename__ = 'elective_bucket_course'

    id = db.Column(db.Integer, primary_key=True)
    bucket_id = db.Column(db.Integer, db.ForeignKey('elective_bucket.id'), nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), unique=True, nullable=False)

    course = db.relationship('Course')


class StudentElectiveSelection(db.Model):
    __tablename__ = 'student_elective_selection'
    __table_args__ = (db.UniqueConstraint('roll_number', 'bucket_id', name='uq_student_elective'),)

    id = db.Column(db.Integer, primary_key=True)
    roll_number = db.Column(db.String(20), db.ForeignKey('student.roll_number'), nullable=False)
    bucket_id = db.Column(db.Integer, db.ForeignKey('elective_bucket.id'), nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    status = db.Column(db.String(10), default='pending', nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'selectionId': self.id,
            'rollnumber': self.roll_number,
            'bucketId': self.bucket_id,
            'courseId': self.course_id,
            'status': self.status,
        }


class CBCS(db.Model):
    __tablename__ = 'cbcs'

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey('batch.id'), nullable=False)
    department_id = db.Column(db.Integer, db.ForeignKey('department.id'), nullable=False)
    semester_id = db.Column(db.Integer, db.ForeignKey('semester.id'), nullable=False)
    type = db.Column(db.String(10), nullable=False)
    total_students = db.Column(db.Integer, default=0)
    complete = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    allocation_excel_path = db.Column(db.String(255))
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=utcnow)

    subjects = db.relationship('CBCSSubject', backref='cbcs', lazy=True, order_by='CBCSSubject.id',
                               cascade='all, delete-orphan')

    def to_dict(self, include_subjects=False):
        data = {
            'id': self.id,
            'batchId': self.batch_id,
            'deptId': self.department_id,
            'semesterId': self.semester_id,
            'type': self.type,
            'totalStudents': self.total_students,
            'complete': self.complete,
            'isActive': self.is_active,
            'hasExcel': bool(self.allocation_excel_path),
            'createdAt': _iso(self.created_at),
        }
        if include_subjects:
            data['subjects'] = [subject.to_dict() for subject in self.subjects]
        return data


class CBCSSubject(db.Model):
    __tablename__ = 'cbcs_subject'

    id = db.Column(db.Integer, primary_key=True)
    cbcs_id = db.Column(db.Integer, db.ForeignKey('cbcs.id'), nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    course_code = db.Column(db.String(20), nullable=False)
    course_name = db.Column(db.String(255), nullable=False)
    bucket_name = db.Column(db.String(150), nullable=False, default='Core')

    staffs = db.relationship('CBCSSectionStaff', backref='subject', lazy=True,
                             order_by='CBCSSectionStaff.id', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'cbcsSubjectId': self.id,
            'courseId': self.course_id,
            'courseCode': self.course_code,
            'courseName': self.course_name,
            'bucketName': self.bucket_name,
            'staffs': [staff.to_dict() for staff in self.staffs],
        }


class CBCSSectionStaff(db.Model):
    __tablename__ = 'cbcs_section_staff'

    id = db.Column(db.Integer, primary_key=True)
    cbcs_subject_id = db.Column(db.Integer, db.ForeignKey('cbcs_subject.id'), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    section = db.relationship('Section')
    staff = db.relationship('User')

    def to_dict(self):
        return {
            'sectionId': self.section_id,
            'sectionName': self.section.section_name if self.section else None,
            'staffId': self.staff_id,
            'staffName': self.staff.name if self.staff else None,
        }


class StudentCourseChoice(db.Model):
    __tablename__ = 'student_course_choice'

    id = db.Column(db.Integer, primary_key=True)
    cbcs_id = db.Column(db.Integer, db.ForeignKey('cbcs.id'), nullable=False)
    roll_number = db.Column(db.String(20), db.ForeignKey('student.roll_number'), nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    preference_order = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'regno': self.roll_number,
            'courseId': self.course_id,
            'sectionId': self.section_id,
            'staffId': self.staff_id,
            'preferenceOrder': self.preference_order,
        }


class Regulation(db.Model):
    __tablename__ = 'regulation'
    __table_args__ = (db.UniqueConstraint('department_id', 'regulation_year', name='uq_regulation'),)

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(db.Integer, db.ForeignKey('department.id'), nullable=False)
    regulation_year = db.Column(db.String(4), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    department = db.relationship('Department')

    def to_dict(self):
        return {
            'regulationId': self.id,
            'departmentId': self.department_id,
            'deptCode': self.department.code if self.department else None,
            'regulationYear': self.regulation_year,
        }


class RegulationCourse(db.Model):
    """Curriculum entry of a regulation, copied into a batch's semesters on allocation."""
    __tablename__ = 'regulation_course'
    __table_args__ = (db.UniqueConstraint('regulation_id', 'course_code', name='uq_regulation_course'),)

    id = db.Column(db.Integer, primary_key=True)
    regulation_id = db.Column(db.Integer, db.ForeignKey('regulation.id'), nullable=False)
    semester_number = db.Column(db.Integer, nullable=False)
    course_code = db.Column(db.String(20), nullable=False)
    course_title = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(10), nullable=False)
    type = db.Column(db.String(30), nullable=False)
    lecture_hours = db.Column(db.Integer, default=0, nullable=False)
    tutorial_hours = db.Column(db.Integer, default=0, nullable=False)
    practical_hours = db.Column(db.Integer, default=0, nullable=False)
    experiential_hours = db.Column(db.Integer, default=0, nullable=False)
    total_contact_periods = db.Column(db.Integer, default=0, nullable=False)
    credits = db.Column(db.Integer, default=0, nullable=False)
    min_mark = db.Column(db.Integer, default=0, nullable=False)
    max_mark = db.Column(db.Integer, default=100, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def to_dict(self):
        return {
            'regCourseId': self.id,
            'regulationId': self.regulation_id,
            'semesterNumber': self.semester_number,
            'courseCode': self.course_code,
            'courseTitle': self.course_title,
            'category': self.category,
            'type': self.type,
            'lectureHours': self.lecture_hours,
            'tutorialHours': self.tutorial_hours,
            'practicalHours': self.practical_hours,
            'experientialHours': self.experiential_hours,
            'totalContactPeriods': self.total_contact_periods,
            'credits': self.credits,
            'minMark': self.min_mark,
            'maxMark': self.max_mark,
        }


class Vertical(db.Model):
    __tablename__ = 'vertical'
    __table_args__ = (db.UniqueConstraint('regulation_id', 'vertical_name', name='uq_vertical'),)

    id = db.Column(db.Integer, primary_key=True)
    regulation_id = db.Column(db.Integer, db.ForeignKey('regulation.id'), nullable=False)
    vertical_name = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    entries = db.relationship('VerticalCourse', backref='vertical', lazy=True, cascade='all, delete-orphan')

    def to_dict(self):
        return {'verticalId': self.id, 'regulationId': self.regulation_id, 'verticalName': self.vertical_name}


class VerticalCourse(db.Model):
    __tablename__ = 'vertical_course'

    id = db.Column(db.Integer, primary_key=True)
    vertical_id = db.Column(db.Integer, db.ForeignKey('vertical.id'), nullable=False)
    reg_course_id = db.Column(db.Integer, db.ForeignKey('regulation_course.id'), unique=True, nullable=False)

    course = db.relationship('RegulationCourse')


class NptelCourse(db.Model):
    __tablename__ = 'nptel_course'

    id = db.Column(db.Integer, primary_key=True)
    course_code = db.Column(db.String(20), nullable=False)
    course_title = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(3), nullable=False)
    credits = db.Column(db.Integer, nullable=False)
    semester_id = db.Column(db.Integer, db.ForeignKey('semester.id'), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=utcnow)

    semester = db.relationship('Semester')

    def to_dict(self):
        batch = self.semester.batch if self.semester else None
        return {
            'nptelCourseId': self.id,
            'courseCode': self.course_code,
            'courseTitle': self.course_title,
            'type': self.type,
            'credits': self.credits,
            'semesterId': self.semester_id,
            'semesterNumber': self.semester.semester_number if self.semester else None,
            'branch': batch.branch if batch else None,
            'batch': batch.batch if batch else None,
        }


class StudentNptelEnrollment(db.Model):
    __tablename__ = 'student_nptel_enrollment'
    __table_args__ = (db.UniqueConstraint('roll_number', 'nptel_course_id', name='uq_student_nptel'),)

    id = db.Column(db.Integer, primary_key=True)
    roll_number = db.Column(db.String(20), db.ForeignKey('student.roll_number'), nullable=False)
    nptel_course_id = db.Column(db.Integer, db.ForeignKey('nptel_course.id'), nullable=False)
    semester_id = db.Column(db.Integer, db.ForeignKey('semester.id'), nullable=False)
    grade = db.Column(db.String(2))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    enrolled_at = db.Column(db.DateTime, default=utcnow)

    nptel_course = db.relationship('NptelCourse')
    semester = db.relationship('Semester')
    transfer = db.relationship('NptelCreditTransfer', uselist=False, back_populates='enrollment')

    def to_dict(self):
        course = self.nptel_course
        return {
            'enrollmentId': self.id,
            'nptelCourseId': self.nptel_course_id,
            'courseCode': course.course_code,
            'courseTitle': course.course_title,
            'type': course.type,
            'credits': course.credits,
            'semesterNumber': self.semester.semester_number if self.semester else None,
            'grade': self.grade,
            'transferId': self.transfer.id if self.transfer else None,
            'transferStatus': self.transfer.status if self.transfer else None,
            'transferredGrade': self.transfer.grade if self.transfer else None,
        }


class NptelCreditTransfer(db.Model):
    __tablename__ = 'nptel_credit_transfer'

    id = db.Column(db.Integer, primary_key=True)
    enrollment_id = db.Column(db.Integer, db.ForeignKey('student_nptel_enrollment.id'), unique=True, nullable=False)
    roll_number = db.Column(db.String(20), db.ForeignKey('student.roll_number'), nullable=False)
    nptel_course_id = db.Column(db.Integer, db.ForeignKey('nptel_course.id'), nullable=False)
    grade = db.Column(db.String(2), nullable=False)
    status = db.Column(db.String(10), default='pending', nullable=False)
    requested_at = db.Column(db.DateTime, default=utcnow)
    reviewed_at = db.Column(db.DateTime)
    reviewed_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    remarks = db.Column(db.String(255))

    enrollment = db.relationship('StudentNptelEnrollment', back_populates='transfer')
    nptel_course = db.relationship('NptelCourse')
    student = db.relationship('Student')

    def to_dict(self):
        return {
            'transferId': self.id,
            'regno': self.roll_number,
            'studentName': self.student.name if self.student else None,
            'courseTitle': self.nptel_course.course_title,
            'courseCode': self.nptel_course.course_code,
            'type': self.nptel_course.type,
            'credits': self.nptel_course.credits,
            'grade': self.grade,
            'status': self.status,
            'requestedAt': _iso(self.requested_at),
            'reviewedAt': _iso(self.reviewed_at),
            'remarks': self.remarks,
        }


def seed_departments():
    """Insert the default departments that are missing. Returns the number added."""
    added = 0
    for code, name in DEFAULT_DEPARTMENTS:
        if Department.query.filter_by(code=code).first() is None:
            db.session.add(Department(code=code, name=name))
            added += 1
    db.session.commit()
    return added
