import logging
from datetime import date

from auth import create_user
from create_test_data import generate_roster
from models import (Batch, Course, Department, ElectiveBucket, ElectiveBucketCourse, Section, Semester,
                    StaffCourse, Student, StudentCourse, Timetable, User, db)

DEMO_PASSWORD = 'password123'

DEMO_COURSES = [
    # code, title, category, type, L, T, P, E, credits
    ('CS3501', 'Compiler Design', 'PEC', 'INTEGRATED', 3, 0, 2, 0, 4),
    ('CS3502', 'Computer Networks', 'PEC', 'THEORY', 3, 0, 0, 0, 3),
    ('CS3503', 'Software Engineering Lab', 'EEC', 'PRACTICAL', 0, 0, 4, 0, 2),
    ('CS3551', 'Cloud Computing', 'OEC', 'THEORY', 3, 0, 0, 0, 3),
    ('CS3552', 'Data Visualization', 'OEC', 'THEORY', 3, 0, 0, 0, 3),
]

DEMO_TIMETABLE = [
    ('CS3501', 'MON', 1), ('CS3502', 'MON', 2), ('CS3503', 'TUE', 3),
    ('CS3501', 'WED', 1), ('CS3502', 'THU', 2), ('CS3551', 'FRI', 4), ('CS3552', 'FRI', 5),
]


def _get_or_create_user(name, email, role, department_id=None, staff_id=None):
    user = User.query.filter_by(email=email).first()
    if user is None:
        user = create_user(name, email, DEMO_PASSWORD, role, department_id=department_id, staff_id=staff_id)
        db.session.flush()
    return user


def seed_demo(student_count=20, batch_year=None):
    """
    Load a small, consistent data set: one CSE batch with its fifth semester, a few courses
    with two sections each, a demo admin and staff member, and a generated student roster.
    Existing rows are reused so the command can be run repeatedly.
    """
    batch_year = str(batch_year or date.today().year - 2)
    department = Department.query.filter_by(code='CSE').first()

    batch = Batch.query.filter_by(degree='B.E', branch='CSE', batch=batch_year).first()
    if batch is None:
        batch = Batch(degree='B.E', branch='CSE', batch=batch_year,
                      batch_years=f"{batch_year}-{int(batch_year) + 4}")
        db.session.add(batch)
        db.session.flush()

    semester = Semester.query.filter_by(batch_id=batch.id, semester_number=5).first()
    if semester is None:
        year = int(batch_year) + 2
        semester = Semester(batch_id=batch.id, semester_number=5,
                            start_date=date(year, 7, 1), end_date=date(year, 11, 30))
        db.session.add(semester)
        db.session.flush()

    admin = _get_or_create_user('Demo Admin', 'admin@college.edu', 'ADMIN')
    staff = _get_or_create_user('Demo Staff', 'staff@college.edu', 'STAFF',
                                department_id=department.id if department else None, staff_id='CSE001')

    courses = {}
    for code, title, category, course_type, lecture, tutorial, practical, experiential, credits in DEMO_COURSES:
        course = Course.query.filter_by(course_code=code).first()
        if course is None:
            course = Course(course_code=code, semester_id=semester.id, course_title=title, category=category,
                            type=course_type, lecture_hours=lecture, tutorial_hours=tutorial,
                            practical_hours=practical, experiential_hours=experiential,
                            total_contact_periods=lecture + tutorial + practical + experiential,
                            credits=credits, min_mark=50, max_mark=100)
            db.session.add(course)
            db.session.flush()
            for number in (1, 2):
                db.session.add(Section(course_id=course.id, section_name=f"Batch {number}"))
            db.session.flush()
        courses[code] = course

    bucket = ElectiveBucket.query.filter_by(semester_id=semester.id, bucket_number=1).first()
    if bucket is None:
        bucket = ElectiveBucket(semester_id=semester.id, bucket_number=1, bucket_name='Open Electives')
        db.session.add(bucket)
        db.session.flush()
        for code in ('CS3551', 'CS3552'):
            db.session.add(ElectiveBucketCourse(bucket_id=bucket.id, course_id=courses[code].id))

    # The demo staff member teaches the first section of every core course
    core_codes = [code for code in courses if code not in ('CS3551', 'CS3552')]
    for code in core_codes:
        course = courses[code]
        section = course.sections[0]
        if StaffCourse.query.filter_by(user_id=staff.id, course_id=course.id, section_id=section.id).first() is None:
            db.session.add(StaffCourse(user_id=staff.id, course_id=course.id, section_id=section.id))

    for code, day, period in DEMO_TIMETABLE:
        taken = Timetable.query.filter_by(semester_id=semester.id, day_of_week=day, period_number=period,
                                          is_active=True).first()
        if taken is None:
            db.session.add(Timetable(course_id=courses[code].id, day_of_week=day, period_number=period,
                                     department_id=department.id if department else None,
                                     semester_id=semester.id))

    roster = generate_roster(count=student_count, degree='B.E', branch='CSE', batch=batch_year, semester=5)
    created = 0
    for index, row in enumerate(roster.to_dict('records')):
        roll_number = row['Roll Number']
        if db.session.get(Student, roll_number) is None:
            db.session.add(Student(roll_number=roll_number, name=row['Name'], email=row['Email'],
                                   batch_id=batch.id, department_id=department.id if department else None,
                                   semester_number=5))
            created += 1
        # Alternate students across the two sections of each core course
        for code in core_codes:
            course = courses[code]
            section = course.sections[index % len(course.sections)]
            if StudentCourse.query.filter_by(roll_number=roll_number, course_id=course.id).first() is None:
                db.session.add(StudentCourse(roll_number=roll_number, course_id=course.id, section_id=section.id))

    db.session.commit()
    logging.info(f"Demo data ready for batch {batch_year}: {created} students created")
    return {
        'batchId': batch.id,
        'semesterId': semester.id,
        'courses': len(courses),
        'studentsCreated': created,
        'adminEmail': admin.email,
        'staffEmail': staff.email,
    }
