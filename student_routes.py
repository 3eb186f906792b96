import logging

from flask import Blueprint, g, request, send_file
from sqlalchemy import or_

from api_helpers import (APIError, ConflictError, NotFoundError, get_excel_handler, get_json_body, get_or_404,
                         parse_int, remove_upload, require_fields, save_upload, success)
from attendance import summarize
from auth import create_user, roles_required
from models import (Batch, Course, Department, ElectiveBucket, ElectiveBucketCourse, PeriodAttendance, Section,
                    Semester, Student, StudentCourse, StudentElectiveSelection, StudentSemesterGPA, User, db)

student_admin_bp = Blueprint('student_admin', __name__, url_prefix='/api/admin')
student_bp = Blueprint('student', __name__, url_prefix='/api/student')


def department_for_branch(branch):
    if not branch:
        return None
    return Department.query.filter(or_(Department.code == branch.strip().upper(),
                                       Department.name == branch.strip())).first()


def enroll_student(roll_number, course, section):
    """Enroll a student in one section of a course, moving an existing enrollment. Returns (row, created)."""
    if section.course_id != course.id:
        raise APIError('Section does not belong to this course')
    enrollment = StudentCourse.query.filter_by(roll_number=roll_number, course_id=course.id).first()
    if enrollment is not None:
        enrollment.section_id = section.id
        return enrollment, False
    enrollment = StudentCourse(roll_number=roll_number, course_id=course.id, section_id=section.id)
    db.session.add(enrollment)
    return enrollment, True


def _resolve_batch(data):
    if data.get('batchId'):
        return get_or_404(Batch, parse_int(data['batchId'], 'batchId'), 'Batch')
    if data.get('degree') and data.get('branch') and data.get('batch'):
        batch = Batch.query.filter_by(degree=data['degree'], branch=data['branch'], batch=str(data['batch'])).first()
        if batch is None:
            raise NotFoundError('Batch not found')
        return batch
    raise APIError('batchId or degree, branch and batch are required')


def _get_student(roll_number):
    student = db.session.get(Student, roll_number.upper())
    if student is None:
        raise NotFoundError('Student not found')
    return student


# Admin: student records

@student_admin_bp.route('/students', methods=['GET'])
@roles_required('ADMIN')
def list_students():
    query = Student.query.join(Batch).filter(Student.is_active.is_(True))
    for arg, column in (('degree', Batch.degree), ('branch', Batch.branch), ('batch', Batch.batch)):
        value = request.args.get(arg)
        if value:
            query = query.filter(column == value)
    if request.args.get('batchId'):
        query = query.filter(Student.batch_id == parse_int(request.args['batchId'], 'batchId'))
    if request.args.get('semester'):
        query = query.filter(Student.semester_number == parse_int(request.args['semester'], 'semester'))
    search = request.args.get('search', '').strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Student.name.ilike(pattern), Student.roll_number.ilike(pattern)))

    students = query.order_by(Student.roll_number).all()
    return success([student.to_dict() for student in students])


@student_admin_bp.route('/students', methods=['POST'])
@roles_required('ADMIN')
def create_student():
    data = get_json_body()
    require_fields(data, ['rollnumber', 'name'])
    roll_number = str(data['rollnumber']).strip().upper()
    if db.session.get(Student, roll_number):
        raise ConflictError('Student with this roll number already exists')

    batch = _resolve_batch(data)
    department_id = data.get('departmentId')
    if department_id:
        get_or_404(Department, parse_int(department_id, 'departmentId'), 'Department')
    else:
        department = department_for_branch(batch.branch)
        department_id = department.id if department else None

    student = Student(
        roll_number=roll_number,
        name=str(data['name']).strip(),
        email=data.get('email'),
        batch_id=batch.id,
        department_id=department_id,
        semester_number=parse_int(data.get('semesterNumber', 1), 'semesterNumber', 1, 8),
    )
    db.session.add(student)
    db.session.flush()

    if data.get('email') and data.get('password'):
        create_user(student.name, data['email'], data['password'], 'STUDENT', roll_number=roll_number)

    db.session.commit()
    logging.info(f"Created student {roll_number}")
    return success(student.to_dict(), 'Student created successfully', 201)


@student_admin_bp.route('/students/<roll_number>', methods=['GET'])
@roles_required('ADMIN')
def get_student(roll_number):
    return success(_get_student(roll_number).to_dict())


@student_admin_bp.route('/students/<roll_number>', methods=['PUT'])
@roles_required('ADMIN')
def update_student(roll_number):
    student = _get_student(roll_number)
    data = get_json_body()
    if data.get('name'):
        student.name = str(data['name']).strip()
    if 'email' in data:
        student.email = data['email']
    if 'semesterNumber' in data:
        student.semester_number = parse_int(data['semesterNumber'], 'semesterNumber', 1, 8)
    if data.get('batchId') or data.get('batch'):
        student.batch_id = _resolve_batch(data).id
    if data.get('departmentId'):
        student.department_id = get_or_404(Department, parse_int(data['departmentId'], 'departmentId'),
                                           'Department').id
    db.session.commit()
    return success(student.to_dict(), 'Student updated successfully')


@student_admin_bp.route('/students/<roll_number>', methods=['DELETE'])
@roles_required('ADMIN')
def delete_student(roll_number):
    student = _get_student(roll_number)
    student.is_active = False
    User.query.filter_by(roll_number=student.roll_number).update({'is_active': False})
    db.session.commit()
    return success(message='Student deleted successfully')


@student_admin_bp.route('/students/import', methods=['POST'])
@roles_required('ADMIN')
def import_students():
    filepath = save_upload()
    try:
        roster = get_excel_handler().read_student_sheet(filepath)
    except ValueError as e:
        raise APIError(str(e))
    finally:
        remove_upload(filepath)

    imported = 0
    updated = 0
    skipped = []
    batches = {}
    for record in roster.to_dict('records'):
        key = (record['degree'], record['branch'], record['batch'])
        if key not in batches:
            batches[key] = Batch.query.filter_by(degree=key[0], branch=key[1], batch=key[2]).first()
        batch = batches[key]
        if batch is None:
            skipped.append({'rollnumber': record['roll_number'], 'reason': f"Batch {' '.join(key)} not found"})
            continue

        try:
            semester_number = int(float(record['semester'])) if record['semester'] else 1
        except ValueError:
            semester_number = 1

        student = db.session.get(Student, record['roll_number'])
        if student is None:
            department = department_for_branch(batch.branch)
            student = Student(roll_number=record['roll_number'],
                              department_id=department.id if department else None)
            db.session.add(student)
            imported += 1
        else:
            updated += 1
        student.name = record['name']
        student.email = record['email'] or student.email
        student.batch_id = batch.id
        student.semester_number = min(max(semester_number, 1), 8)
        student.is_active = True

    db.session.commit()
    for item in skipped:
        logging.warning(f"Student import skipped {item['rollnumber']}: {item['reason']}")
    return success({'imported': imported, 'updated': updated, 'skipped': skipped},
                   f"Imported {imported} students, updated {updated}")


@student_admin_bp.route('/students/export', methods=['GET'])
@roles_required('ADMIN')
def export_students():
    query = Student.query.filter_by(is_active=True)
    if request.args.get('batchId'):
        query = query.filter(Student.batch_id == parse_int(request.args['batchId'], 'batchId'))
    students = [student.to_dict() for student in query.order_by(Student.roll_number).all()]
    filepath = get_excel_handler().export_students(students)
    return send_file(filepath, as_attachment=True, download_name='students.xlsx')


# Admin: enrollment

@student_admin_bp.route('/students/enroll', methods=['POST'])
@roles_required('ADMIN')
def enroll():
    data = get_json_body()
    require_fields(data, ['rollNumber', 'courseId', 'sectionId'])
    student = _get_student(str(data['rollNumber']))
    course = get_or_404(Course, parse_int(data['courseId'], 'courseId'), 'Course')
    section = get_or_404(Section, parse_int(data['sectionId'], 'sectionId'), 'Section')

    enrollment, created = enroll_student(student.roll_number, course, section)
    db.session.commit()
    message = 'Student enrolled successfully' if created else 'Student moved to the new section'
    return success(enrollment.to_dict(), message, 201 if created else 200)


@student_admin_bp.route('/students/unenroll', methods=['DELETE'])
@roles_required('ADMIN')
def unenroll():
    data = get_json_body()
    require_fields(data, ['rollNumber', 'courseId'])
    enrollment = StudentCourse.query.filter_by(roll_number=str(data['rollNumber']).upper(),
                                               course_id=parse_int(data['courseId'], 'courseId')).first()
    if enrollment is None:
        raise NotFoundError('Enrollment not found')
    db.session.delete(enrollment)
    db.session.commit()
    return success(message='Student unenrolled successfully')


@student_admin_bp.route('/students/<roll_number>/enrolled-courses', methods=['GET'])
@roles_required('ADMIN')
def enrolled_courses(roll_number):
    student = _get_student(roll_number)
    enrollments = StudentCourse.query.filter_by(roll_number=student.roll_number).all()
    return success([enrollment.to_dict() for enrollment in enrollments])


@student_admin_bp.route('/students/enrolled', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def students_in_section():
    course_id = parse_int(request.args.get('courseId'), 'courseId')
    query = StudentCourse.query.filter_by(course_id=course_id)
    if request.args.get('sectionId'):
        query = query.filter_by(section_id=parse_int(request.args['sectionId'], 'sectionId'))
    rows = []
    for enrollment in query.order_by(StudentCourse.roll_number).all():
        data = enrollment.to_dict()
        data['name'] = enrollment.student.name
        rows.append(data)
    return success(rows)


# Student self-service

def current_student():
    roll_number = g.current_user.roll_number
    student = db.session.get(Student, roll_number) if roll_number else None
    if student is None:
        raise NotFoundError('No student record is linked to this account')
    return student


@student_bp.route('/profile', methods=['GET'])
@roles_required('STUDENT')
def profile():
    student = current_student()
    data = student.to_dict()
    data['department'] = student.department.name if student.department else None
    return success(data)


@student_bp.route('/courses', methods=['GET'])
@roles_required('STUDENT')
def my_courses():
    student = current_student()
    enrollments = StudentCourse.query.filter_by(roll_number=student.roll_number).all()
    return success([enrollment.to_dict() for enrollment in enrollments])


@student_bp.route('/gpa-history', methods=['GET'])
@roles_required('STUDENT')
def gpa_history():
    student = current_student()
    records = (StudentSemesterGPA.query.join(Semester)
               .filter(StudentSemesterGPA.roll_number == student.roll_number)
               .order_by(Semester.semester_number).all())
    return success([{
        'semesterId': record.semester_id,
        'semesterNumber': record.semester.semester_number,
        'gpa': record.gpa,
        'cgpa': record.cgpa,
    } for record in records])


@student_bp.route('/attendance', methods=['GET'])
@roles_required('STUDENT')
def my_attendance():
    student = current_student()
    query = PeriodAttendance.query.filter_by(roll_number=student.roll_number)
    if request.args.get('semesterId'):
        semester_id = parse_int(request.args['semesterId'], 'semesterId')
        course_ids = [course.id for course in Course.query.filter_by(semester_id=semester_id).all()]
        query = query.filter(PeriodAttendance.course_id.in_(course_ids))

    statuses = {}
    for record in query.all():
        statuses.setdefault(record.course_id, []).append(record.status)

    summary = []
    for course_id, values in sorted(statuses.items()):
        course = db.session.get(Course, course_id)
        row = {'courseId': course_id, 'courseCode': course.course_code, 'courseTitle': course.course_title}
        row.update(summarize(values))
        summary.append(row)
    return success(summary)


@student_bp.route('/electives', methods=['GET'])
@roles_required('STUDENT')
def elective_options():
    student = current_student()
    semester_id = parse_int(request.args.get('semesterId'), 'semesterId')
    buckets = ElectiveBucket.query.filter_by(semester_id=semester_id).order_by(ElectiveBucket.bucket_number).all()
    selections = {selection.bucket_id: selection for selection in
                  StudentElectiveSelection.query.filter_by(roll_number=student.roll_number).all()}

    result = []
    for bucket in buckets:
        data = bucket.to_dict()
        selection = selections.get(bucket.id)
        data['selectedCourseId'] = selection.course_id if selection else None
        data['selectionStatus'] = selection.status if selection else None
        result.append(data)
    return success(result)


@student_bp.route('/electives', methods=['POST'])
@roles_required('STUDENT')
def select_electives():
    student = current_student()
    data = get_json_body()
    require_fields(data, ['semesterId'])
    semester_id = parse_int(data['semesterId'], 'semesterId')
    selections = data.get('selections')
    if not isinstance(selections, list) or not selections:
        raise APIError('selections must be a non-empty list')

    bucket_ids = [item.get('bucketId') for item in selections]
    if len(set(bucket_ids)) != len(bucket_ids):
        raise APIError('Only one elective can be selected per bucket')

    saved = []
    for item in selections:
        bucket = get_or_404(ElectiveBucket, parse_int(item.get('bucketId'), 'bucketId'), 'Bucket')
        if bucket.semester_id != semester_id:
            raise APIError(f"Bucket {bucket.id} does not belong to this semester")
        course_id = parse_int(item.get('courseId'), 'courseId')
        if ElectiveBucketCourse.query.filter_by(bucket_id=bucket.id, course_id=course_id).first() is None:
            raise APIError(f"Course {course_id} is not part of bucket {bucket.bucket_number}")

        selection = StudentElectiveSelection.query.filter_by(roll_number=student.roll_number,
                                                             bucket_id=bucket.id).first()
        if selection is None:
            selection = StudentElectiveSelection(roll_number=student.roll_number, bucket_id=bucket.id)
            db.session.add(selection)
        selection.course_id = course_id
        selection.status = 'pending'
        saved.append(selection)

    db.session.commit()
    return success([selection.to_dict() for selection in saved], 'Elective selections saved')
