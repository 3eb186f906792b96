import logging

from flask import Blueprint, request

from api_helpers import (APIError, NotFoundError, get_excel_handler, get_or_404, parse_int, remove_upload,
                         require_args, save_upload, success)
from auth import roles_required
from grading import InvalidGradeError, compute_gpa, normalize_grade
from models import Batch, Course, Semester, Student, StudentGrade, StudentSemesterGPA, db

grade_bp = Blueprint('grades', __name__, url_prefix='/api/admin/grades')


def _grade_records(roll_number, semester_ids):
    rows = (db.session.query(Course.credits, StudentGrade.grade)
            .join(Course, StudentGrade.course_id == Course.id)
            .filter(StudentGrade.roll_number == roll_number, Course.semester_id.in_(semester_ids))
            .all())
    return [(credits, grade) for credits, grade in rows]


def semester_gpa(roll_number, semester):
    return compute_gpa(_grade_records(roll_number, [semester.id]))


def cumulative_gpa(roll_number, semester):
    """CGPA over every semester of the batch up to and including this one."""
    semester_ids = [row.id for row in Semester.query.filter(
        Semester.batch_id == semester.batch_id,
        Semester.semester_number <= semester.semester_number).all()]
    return compute_gpa(_grade_records(roll_number, semester_ids))


def refresh_gpa(roll_number, semester):
    record = StudentSemesterGPA.query.filter_by(roll_number=roll_number, semester_id=semester.id).first()
    if record is None:
        record = StudentSemesterGPA(roll_number=roll_number, semester_id=semester.id)
        db.session.add(record)
    record.gpa = semester_gpa(roll_number, semester)
    record.cgpa = cumulative_gpa(roll_number, semester)
    return record


@grade_bp.route('/import', methods=['POST'])
@roles_required('ADMIN')
def import_grades():
    semester = get_or_404(Semester, parse_int(request.form.get('semesterId'), 'semesterId'), 'Semester')
    filepath = save_upload()
    try:
        cells, course_codes = get_excel_handler().read_grade_sheet(filepath)
    except ValueError as e:
        raise APIError(str(e))
    finally:
        remove_upload(filepath)

    courses = {course.course_code: course for course in
               Course.query.filter(Course.course_code.in_(course_codes)).all()}
    regnos = {regno for regno, _, _ in cells}
    known_students = {student.roll_number for student in
                      Student.query.filter(Student.roll_number.in_(regnos)).all()}
    existing = {(grade.roll_number, grade.course_id): grade for grade in
                StudentGrade.query.filter(StudentGrade.roll_number.in_(known_students)).all()}

    skipped_courses = {code for code in course_codes if code not in courses}
    skipped_students = regnos - known_students
    inserted = 0
    updated = 0
    invalid = 0
    graded = set()

    for regno, code, raw_grade in cells:
        if regno not in known_students or code not in courses:
            continue
        try:
            grade = normalize_grade(raw_grade)
        except InvalidGradeError:
            logging.warning(f"Ignoring invalid grade '{raw_grade}' for {regno} in {code}")
            invalid += 1
            continue
        if grade is None:
            continue

        course = courses[code]
        record = existing.get((regno, course.id))
        if record is None:
            record = StudentGrade(roll_number=regno, course_id=course.id, grade=grade)
            db.session.add(record)
            existing[(regno, course.id)] = record
            inserted += 1
        else:
            record.grade = grade
            updated += 1
        graded.add(regno)

    db.session.flush()
    for regno in sorted(graded):
        refresh_gpa(regno, semester)
    db.session.commit()

    for code in sorted(skipped_courses):
        logging.warning(f"Grade upload skipped unknown course {code}")
    logging.info(f"Grade upload for semester {semester.id}: {inserted} inserted, {updated} updated")
    return success({
        'inserted': inserted,
        'updated': updated,
        'skippedStudents': len(skipped_students),
        'skippedCourses': len(skipped_courses),
        'invalidGrades': invalid,
        'totalValidRecords': inserted + updated,
        'studentsWithGPA': len(graded),
    }, 'Grades imported successfully')


def _display(value):
    return '-' if value is None else value


@grade_bp.route('/gpa', methods=['GET'])
@roles_required('ADMIN')
def view_gpa():
    regno, semester_id = require_args('regno', 'semesterId')
    semester = get_or_404(Semester, parse_int(semester_id, 'semesterId'), 'Semester')
    return success({'regno': regno.upper(), 'semesterId': semester.id,
                    'gpa': _display(semester_gpa(regno.upper(), semester))})


@grade_bp.route('/cgpa', methods=['GET'])
@roles_required('ADMIN')
def view_cgpa():
    regno, semester_id = require_args('regno', 'upToSemesterId')
    semester = get_or_404(Semester, parse_int(semester_id, 'upToSemesterId'), 'Semester')
    return success({'regno': regno.upper(), 'upToSemesterId': semester.id,
                    'cgpa': _display(cumulative_gpa(regno.upper(), semester))})


@grade_bp.route('/students', methods=['GET'])
@roles_required('ADMIN')
def students_for_grades():
    branch, batch_year = require_args('branch', 'batch')
    batches = Batch.query.filter_by(branch=branch, batch=batch_year).all()
    if not batches:
        raise NotFoundError('Batch not found')
    students = (Student.query.filter(Student.batch_id.in_([batch.id for batch in batches]),
                                     Student.is_active.is_(True))
                .order_by(Student.roll_number).all())
    return success([{'regno': student.roll_number, 'name': student.name} for student in students])
