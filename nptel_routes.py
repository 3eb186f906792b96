import logging

from flask import Blueprint, g, request
from sqlalchemy import func

from api_helpers import (APIError, ConflictError, NotFoundError, get_excel_handler, get_json_body, get_or_404,
                         parse_int, remove_upload, require_fields, save_upload, success)
from auth import roles_required
from grading import InvalidGradeError, normalize_grade
from models import (ELECTIVE_CATEGORIES, TRANSFER_ACTIONS, Course, NptelCourse, NptelCreditTransfer,
                    RegulationCourse, Semester, StudentElectiveSelection, StudentNptelEnrollment, db, utcnow)
from student_routes import current_student

nptel_admin_bp = Blueprint('nptel_admin', __name__, url_prefix='/api/admin')
nptel_student_bp = Blueprint('nptel_student', __name__, url_prefix='/api/student')


def _active_semester(semester_id):
    semester = db.session.get(Semester, semester_id)
    if semester is None or not semester.is_active:
        raise APIError(f"No active semester found with ID {semester_id}")
    return semester


def nptel_course_values(data):
    require_fields(data, ['courseTitle', 'courseCode', 'type', 'credits', 'semesterId'])
    title = str(data['courseTitle']).strip()
    code = str(data['courseCode']).strip().upper()
    if len(title) > 255 or len(code) > 20:
        raise APIError('courseTitle or courseCode is too long')
    course_type = str(data['type']).strip().upper()
    if course_type not in ELECTIVE_CATEGORIES:
        raise APIError(f"type must be one of {', '.join(ELECTIVE_CATEGORIES)}")
    credits = parse_int(data['credits'], 'credits', 1, 10)
    semester = _active_semester(parse_int(data['semesterId'], 'semesterId'))
    return {'course_title': title, 'course_code': code, 'type': course_type, 'credits': credits,
            'semester_id': semester.id}


def _check_duplicate(values, exclude_id=None):
    query = NptelCourse.query.filter_by(course_code=values['course_code'], semester_id=values['semester_id'],
                                        is_active=True)
    if exclude_id is not None:
        query = query.filter(NptelCourse.id != exclude_id)
    if query.first():
        raise ConflictError(f"NPTEL course with code {values['course_code']} already exists in this semester")


def _get_nptel_course(nptel_course_id):
    course = get_or_404(NptelCourse, nptel_course_id, 'NPTEL course')
    if not course.is_active:
        raise NotFoundError('NPTEL course not found')
    return course


# Admin: NPTEL catalogue

@nptel_admin_bp.route('/nptel-courses', methods=['GET'])
@roles_required('ADMIN')
def list_nptel_courses():
    query = NptelCourse.query.filter_by(is_active=True)
    if request.args.get('semesterId'):
        query = query.filter(NptelCourse.semester_id == parse_int(request.args['semesterId'], 'semesterId'))
    courses = query.order_by(NptelCourse.id.desc()).all()
    return success([course.to_dict() for course in courses], results=len(courses))


@nptel_admin_bp.route('/nptel-courses', methods=['POST'])
@roles_required('ADMIN')
def add_nptel_course():
    values = nptel_course_values(get_json_body())
    _check_duplicate(values)
    course = NptelCourse(created_by=g.current_user.id, **values)
    db.session.add(course)
    db.session.commit()
    return success(course.to_dict(), 'NPTEL course added successfully', 201)


@nptel_admin_bp.route('/nptel-courses/bulk', methods=['POST'])
@roles_required('ADMIN')
def bulk_add_nptel_courses():
    courses = get_json_body().get('courses')
    if not isinstance(courses, list) or not courses:
        raise APIError('No courses provided for bulk import')

    imported = 0
    errors = []
    for index, data in enumerate(courses, 2):
        try:
            if not isinstance(data, dict):
                raise APIError('row is not an object')
            values = nptel_course_values(data)
            _check_duplicate(values)
        except APIError as e:
            errors.append(f"Row {index}: {e.message}")
            continue
        db.session.add(NptelCourse(created_by=g.current_user.id, **values))
        db.session.flush()
        imported += 1

    db.session.commit()
    for error in errors:
        logging.warning(f"NPTEL bulk import: {error}")
    return success({'importedCount': imported, 'errors': errors}, f"Successfully imported {imported} NPTEL courses")


@nptel_admin_bp.route('/nptel-courses/<int:nptel_course_id>', methods=['PUT'])
@roles_required('ADMIN')
def update_nptel_course(nptel_course_id):
    course = _get_nptel_course(nptel_course_id)
    values = nptel_course_values(get_json_body())
    _check_duplicate(values, exclude_id=course.id)
    for field, value in values.items():
        setattr(course, field, value)
    db.session.commit()
    return success(course.to_dict(), 'NPTEL course updated successfully')


@nptel_admin_bp.route('/nptel-courses/<int:nptel_course_id>', methods=['DELETE'])
@roles_required('ADMIN')
def delete_nptel_course(nptel_course_id):
    course = _get_nptel_course(nptel_course_id)
    course.is_active = False
    db.session.commit()
    return success(message='NPTEL course deleted successfully')


@nptel_admin_bp.route('/nptel-grades/import', methods=['POST'])
@roles_required('ADMIN')
def import_nptel_grades():
    """
    Record NPTEL results from a wide grade sheet (regno column, one column per NPTEL course code).
    Only students enrolled in the course get a grade.
    """
    semester = get_or_404(Semester, parse_int(request.form.get('semesterId'), 'semesterId'), 'Semester')
    filepath = save_upload()
    try:
        cells, course_codes = get_excel_handler().read_grade_sheet(filepath)
    except ValueError as e:
        raise APIError(str(e))
    finally:
        remove_upload(filepath)

    courses = {course.course_code: course for course in
               NptelCourse.query.filter(NptelCourse.semester_id == semester.id, NptelCourse.is_active.is_(True),
                                        NptelCourse.course_code.in_(course_codes)).all()}
    enrollments = {(enrollment.roll_number, enrollment.nptel_course_id): enrollment for enrollment in
                   StudentNptelEnrollment.query.filter(
                       StudentNptelEnrollment.nptel_course_id.in_([course.id for course in courses.values()]),
                       StudentNptelEnrollment.is_active.is_(True)).all()}

    updated = 0
    invalid = 0
    not_enrolled = 0
    for regno, code, raw_grade in cells:
        course = courses.get(code)
        if course is None:
            continue
        try:
            grade = normalize_grade(raw_grade)
        except InvalidGradeError:
            logging.warning(f"Ignoring invalid NPTEL grade '{raw_grade}' for {regno} in {code}")
            invalid += 1
            continue
        if grade is None:
            continue
        enrollment = enrollments.get((regno, course.id))
        if enrollment is None:
            not_enrolled += 1
            continue
        enrollment.grade = grade
        updated += 1

    db.session.commit()
    return success({
        'updated': updated,
        'notEnrolled': not_enrolled,
        'skippedCourses': len({code for code in course_codes if code not in courses}),
        'invalidGrades': invalid,
    }, 'NPTEL grades imported successfully')


# Admin: credit transfer review

@nptel_admin_bp.route('/nptel-credit-transfers', methods=['GET'])
@roles_required('ADMIN')
def list_credit_transfers():
    query = NptelCreditTransfer.query
    if request.args.get('status'):
        query = query.filter(NptelCreditTransfer.status == request.args['status'].strip().lower())
    transfers = query.order_by(NptelCreditTransfer.requested_at.desc(), NptelCreditTransfer.id.desc()).all()
    return success([transfer.to_dict() for transfer in transfers])


@nptel_admin_bp.route('/nptel-credit-transfer-action', methods=['POST'])
@roles_required('ADMIN')
def review_credit_transfer():
    data = get_json_body()
    require_fields(data, ['transferId', 'action'])
    action = str(data['action']).strip().lower()
    if action not in TRANSFER_ACTIONS:
        raise APIError('Invalid action')
    transfer = get_or_404(NptelCreditTransfer, parse_int(data['transferId'], 'transferId'), 'Request')
    if transfer.status != 'pending':
        raise ConflictError(f"Request is already {transfer.status}")

    transfer.status = action
    transfer.reviewed_at = utcnow()
    transfer.reviewed_by = g.current_user.id
    transfer.remarks = data.get('remarks') or None
    db.session.commit()
    logging.info(f"NPTEL credit transfer {transfer.id} for {transfer.roll_number} {action}")
    return success(transfer.to_dict(), f"Request {action} successfully")


# Student self-service

@nptel_student_bp.route('/nptel-courses', methods=['GET'])
@roles_required('STUDENT')
def available_nptel_courses():
    student = current_student()
    semester_id = parse_int(request.args.get('semesterId'), 'semesterId')
    courses = (NptelCourse.query.filter_by(semester_id=semester_id, is_active=True)
               .order_by(NptelCourse.course_title).all())
    enrolled = {enrollment.nptel_course_id for enrollment in
                StudentNptelEnrollment.query.filter_by(roll_number=student.roll_number, is_active=True).all()}

    result = []
    for course in courses:
        data = course.to_dict()
        data['isEnrolled'] = course.id in enrolled
        result.append(data)
    return success(result)


@nptel_student_bp.route('/nptel-enroll', methods=['POST'])
@roles_required('STUDENT')
def enroll_nptel():
    student = current_student()
    data = get_json_body()
    require_fields(data, ['semesterId'])
    course_ids = data.get('nptelCourseIds')
    if not isinstance(course_ids, list) or not course_ids:
        raise APIError('semesterId and non-empty nptelCourseIds array are required')
    course_ids = {parse_int(course_id, 'nptelCourseIds') for course_id in course_ids}

    semester = _active_semester(parse_int(data['semesterId'], 'semesterId'))
    if semester.batch_id != student.batch_id:
        raise APIError('Semester does not belong to your batch')
    valid = NptelCourse.query.filter(NptelCourse.id.in_(course_ids), NptelCourse.semester_id == semester.id,
                                     NptelCourse.is_active.is_(True)).count()
    if valid != len(course_ids):
        raise APIError('One or more courses are invalid or not available')

    enrolled = 0
    for course_id in sorted(course_ids):
        enrollment = StudentNptelEnrollment.query.filter_by(roll_number=student.roll_number,
                                                            nptel_course_id=course_id).first()
        if enrollment is None:
            db.session.add(StudentNptelEnrollment(roll_number=student.roll_number, nptel_course_id=course_id,
                                                  semester_id=semester.id))
            enrolled += 1
        elif not enrollment.is_active:
            enrollment.is_active = True
            enrolled += 1

    db.session.commit()
    return success({'enrolledCount': enrolled}, f"Successfully enrolled in {enrolled} new NPTEL course(s)")


@nptel_student_bp.route('/nptel-enrollments', methods=['GET'])
@roles_required('STUDENT')
def my_nptel_enrollments():
    student = current_student()
    enrollments = (StudentNptelEnrollment.query.join(Semester, StudentNptelEnrollment.semester_id == Semester.id)
                   .join(NptelCourse, StudentNptelEnrollment.nptel_course_id == NptelCourse.id)
                   .filter(StudentNptelEnrollment.roll_number == student.roll_number,
                           StudentNptelEnrollment.is_active.is_(True))
                   .order_by(Semester.semester_number.desc(), NptelCourse.course_title).all())
    return success([enrollment.to_dict() for enrollment in enrollments])


@nptel_student_bp.route('/nptel-credit-transfer', methods=['POST'])
@roles_required('STUDENT')
def request_credit_transfer():
    student = current_student()
    data = get_json_body()
    require_fields(data, ['enrollmentId'])
    enrollment = db.session.get(StudentNptelEnrollment, parse_int(data['enrollmentId'], 'enrollmentId'))
    if enrollment is None or enrollment.roll_number != student.roll_number or not enrollment.is_active:
        raise NotFoundError('Enrollment not found')
    if enrollment.grade is None or enrollment.grade == 'U':
        raise APIError('Grade not found or failed (U). Cannot request transfer.')

    transfer = enrollment.transfer
    if transfer is None:
        transfer = NptelCreditTransfer(enrollment_id=enrollment.id, roll_number=student.roll_number,
                                       nptel_course_id=enrollment.nptel_course_id, grade=enrollment.grade)
        db.session.add(transfer)
    elif transfer.status == 'approved':
        raise ConflictError('Credit transfer has already been approved')
    else:
        # Pending requests pick up the latest grade, rejected ones go back for review
        transfer.grade = enrollment.grade
        transfer.status = 'pending'
        transfer.requested_at = utcnow()
        transfer.reviewed_at = None
        transfer.reviewed_by = None
        transfer.remarks = None

    db.session.commit()
    return success(transfer.to_dict(), 'Credit transfer request submitted')


@nptel_student_bp.route('/oec-pec-progress', methods=['GET'])
@roles_required('STUDENT')
def oec_pec_progress():
    """Elective credits required by the batch regulation against NPTEL transfers and allocated electives."""
    student = current_student()
    regulation_id = student.batch.regulation_id if student.batch else None
    if regulation_id is None:
        raise NotFoundError('No regulation assigned to batch')

    required = dict.fromkeys(ELECTIVE_CATEGORIES, 0)
    for category, count in (db.session.query(RegulationCourse.category, func.count(RegulationCourse.id))
                            .filter(RegulationCourse.regulation_id == regulation_id,
                                    RegulationCourse.category.in_(ELECTIVE_CATEGORIES),
                                    RegulationCourse.is_active.is_(True))
                            .group_by(RegulationCourse.category).all()):
        required[category] = count

    from_nptel = dict.fromkeys(ELECTIVE_CATEGORIES, 0)
    for course_type, count in (db.session.query(NptelCourse.type, func.count(NptelCreditTransfer.id))
                               .select_from(NptelCreditTransfer)
                               .join(NptelCourse, NptelCreditTransfer.nptel_course_id == NptelCourse.id)
                               .filter(NptelCreditTransfer.roll_number == student.roll_number,
                                       NptelCreditTransfer.status == 'approved')
                               .group_by(NptelCourse.type).all()):
        from_nptel[course_type] = count

    from_college = dict.fromkeys(ELECTIVE_CATEGORIES, 0)
    for category, count in (db.session.query(Course.category, func.count(StudentElectiveSelection.id))
                            .select_from(StudentElectiveSelection)
                            .join(Course, StudentElectiveSelection.course_id == Course.id)
                            .filter(StudentElectiveSelection.roll_number == student.roll_number,
                                    StudentElectiveSelection.status == 'allocated',
                                    Course.category.in_(ELECTIVE_CATEGORIES))
                            .group_by(Course.category).all()):
        from_college[category] = count

    completed = {key: from_nptel[key] + from_college[key] for key in ELECTIVE_CATEGORIES}
    return success({
        'required': required,
        'completed': completed,
        'remaining': {key: max(0, required[key] - completed[key]) for key in ELECTIVE_CATEGORIES},
        'fromNptel': from_nptel,
        'fromCollege': from_college,
    })
