"""Shared pytest fixtures for the API test suite.

Fixture overview
----------------
app             a fresh application on an in-memory SQLite database, with the
                default departments seeded and an app context pushed
client          Flask test client for ``app``
auth_header     turns a user into an ``Authorization: Bearer`` header
admin / staff   ADMIN and CSE STAFF accounts
student_user    STUDENT account linked to roll number 23CSE001
batch ...       a B.E CSE 2023 batch with semester 5, one course (CS3501)
                with two sections and three enrolled students
"""

from datetime import date

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from auth import create_token
from models import (Batch, Course, Department, Section, Semester, StaffCourse, Student, StudentCourse,
                    Timetable, User, db, seed_departments)

TEST_SECRET = 'test-secret-key-that-is-long-enough-for-hs256'


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SECRET_KEY': TEST_SECRET,
        'UPLOAD_FOLDER': str(tmp_path / 'uploads'),
        'EXPORT_FOLDER': str(tmp_path / 'exports'),
    })
    with app.app_context():
        db.create_all()
        seed_departments()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_header():
    def make(user):
        return {'Authorization': f"Bearer {create_token(user)}"}
    return make


def make_user(name, email, role, **kwargs):
    user = User(name=name, email=email, password_hash=generate_password_hash('secret123'), role=role, **kwargs)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def cse(app) -> Department:
    return Department.query.filter_by(code='CSE').first()


@pytest.fixture
def admin(app):
    return make_user('Admin', 'admin@college.edu', 'ADMIN')


@pytest.fixture
def staff(app, cse):
    return make_user('Staff One', 'staff1@college.edu', 'STAFF', department_id=cse.id, staff_id='CSE001')


@pytest.fixture
def other_staff(app, cse):
    return make_user('Staff Two', 'staff2@college.edu', 'STAFF', department_id=cse.id, staff_id='CSE002')


# ── Academic structure ────────────────────────────────────────────────────────


@pytest.fixture
def batch(app):
    batch = Batch(degree='B.E', branch='CSE', batch='2023', batch_years='2023-2027')
    db.session.add(batch)
    db.session.commit()
    return batch


@pytest.fixture
def semester(batch):
    semester = Semester(batch_id=batch.id, semester_number=5,
                        start_date=date(2024, 1, 1), end_date=date(2024, 1, 31))
    db.session.add(semester)
    db.session.commit()
    return semester


@pytest.fixture
def course(semester):
    course = Course(course_code='CS3501', semester_id=semester.id, course_title='Compiler Design',
                    category='PEC', type='INTEGRATED', lecture_hours=3, practical_hours=2,
                    total_contact_periods=5, credits=4, min_mark=50, max_mark=100)
    db.session.add(course)
    db.session.flush()
    for number in (1, 2):
        db.session.add(Section(course_id=course.id, section_name=f"Batch {number}"))
    db.session.commit()
    return course


@pytest.fixture
def sections(course):
    return list(course.sections)


@pytest.fixture
def students(batch, cse, course, sections):
    """23CSE001 and 23CSE002 in Batch 1, 23CSE003 in Batch 2."""
    rows = []
    for number, section in ((1, sections[0]), (2, sections[0]), (3, sections[1])):
        roll_number = f"23CSE00{number}"
        student = Student(roll_number=roll_number, name=f"Student {number}",
                          email=f"{roll_number.lower()}@college.edu", batch_id=batch.id,
                          department_id=cse.id, semester_number=5)
        db.session.add(student)
        db.session.flush()
        db.session.add(StudentCourse(roll_number=roll_number, course_id=course.id, section_id=section.id))
        rows.append(student)
    db.session.commit()
    return rows


@pytest.fixture
def student_user(students):
    return make_user('Student 1', 'student1@college.edu', 'STUDENT', roll_number=students[0].roll_number)


@pytest.fixture
def staff_allocation(staff, course, sections):
    """Staff One teaches Batch 1 of CS3501."""
    allocation = StaffCourse(user_id=staff.id, course_id=course.id, section_id=sections[0].id)
    db.session.add(allocation)
    db.session.commit()
    return allocation


@pytest.fixture
def monday_slot(semester, course, cse):
    """CS3501 in period 1 on Mondays, for every section."""
    entry = Timetable(course_id=course.id, day_of_week='MON', period_number=1, department_id=cse.id,
                      semester_id=semester.id)
    db.session.add(entry)
    db.session.commit()
    return entry


@pytest.fixture
def ece_staff(app):
    ece = Department.query.filter_by(code='ECE').first()
    return make_user('ECE Staff', 'ece@college.edu', 'STAFF', department_id=ece.id, staff_id='ECE001')
