import logging

from flask import Blueprint, request
from sqlalchemy import func

from api_helpers import (APIError, ConflictError, NotFoundError, get_excel_handler, get_json_body, get_or_404,
                         parse_date, parse_int, remove_upload, require_args, require_fields, save_upload, success)
from auth import roles_required
from models import (COURSE_CATEGORIES, COURSE_TYPES, Batch, CBCSSectionStaff, Course, Department, ElectiveBucket,
                    ElectiveBucketCourse, PeriodAttendance, Section, Semester, StaffCourse, Student,
                    StudentCourse, StudentCourseChoice, StudentElectiveSelection, Timetable, db)

academic_bp = Blueprint('academic', __name__, url_prefix='/api/admin')

COURSE_FIELDS = {
    'courseCode': 'course_code',
    'courseTitle': 'course_title',
    'category': 'category',
    'type': 'type',
    'lectureHours': 'lecture_hours',
    'tutorialHours': 'tutorial_hours',
    'practicalHours': 'practical_hours',
    'experientialHours': 'experiential_hours',
    'totalContactPeriods': 'total_contact_periods',
    'credits': 'credits',
    'minMark': 'min_mark',
    'maxMark': 'max_mark',
}
HOUR_FIELDS = ['lecture_hours', 'tutorial_hours', 'practical_hours', 'experiential_hours']

# Rows that keep a section alive, checked in this order
SECTION_REFERENCES = (
    (StudentCourse, 'Students are enrolled in this section'),
    (Timetable, 'This section is used in the timetable'),
    (PeriodAttendance, 'Attendance has been recorded for this section'),
    (CBCSSectionStaff, 'This section is offered in a CBCS'),
    (StudentCourseChoice, 'Students have chosen this section in a CBCS'),
)


def to_count(value, field, default=0):
    if value is None or str(value).strip() == '':
        return default
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        raise APIError(f"'{field}' must be a number")
    if number < 0:
        raise APIError(f"'{field}' cannot be negative")
    return number


def validate_course_values(values):
    """Normalise and check course attributes given with model field names."""
    code = str(values.get('course_code') or '').strip().upper()
    title = str(values.get('course_title') or '').strip()
    if not code or not title:
        raise APIError('courseCode and courseTitle are required')

    category = str(values.get('category') or '').strip().upper()
    if category not in COURSE_CATEGORIES:
        raise APIError(f"category must be one of {', '.join(COURSE_CATEGORIES)}")
    course_type = str(values.get('type') or '').strip().upper()
    if course_type not in COURSE_TYPES:
        raise APIError(f"type must be one of {', '.join(COURSE_TYPES)}")

    result = {'course_code': code, 'course_title': title, 'category': category, 'type': course_type}
    for field in HOUR_FIELDS:
        result[field] = to_count(values.get(field), field)
    result['total_contact_periods'] = to_count(values.get('total_contact_periods'), 'totalContactPeriods',
                                               default=sum(result[field] for field in HOUR_FIELDS))
    result['credits'] = to_count(values.get('credits'), 'credits')
    result['min_mark'] = to_count(values.get('min_mark'), 'minMark')
    result['max_mark'] = to_count(values.get('max_mark'), 'maxMark', default=100)
    if result['min_mark'] > result['max_mark']:
        raise APIError('minMark cannot be greater than maxMark')
    return result


def _course_values_from_json(data, course=None):
    values = {}
    if course is not None:
        values = {field: getattr(course, field) for field in COURSE_FIELDS.values()}
        # Recompute contact periods from the hours unless it is sent explicitly
        if any(key in data for key in ('lectureHours', 'tutorialHours', 'practicalHours', 'experientialHours')):
            values.pop('total_contact_periods')
    for key, field in COURSE_FIELDS.items():
        if key in data:
            values[field] = data[key]
    return validate_course_values(values)


# Departments

@academic_bp.route('/departments', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_departments():
    departments = Department.query.filter_by(is_active=True).order_by(Department.id).all()
    return success([dept.to_dict() for dept in departments])


# Batches and the degree -> branch -> batch -> semester cascade

@academic_bp.route('/degrees', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_degrees():
    rows = db.session.query(Batch.degree).filter_by(is_active=True).distinct().order_by(Batch.degree).all()
    return success([row[0] for row in rows])


@academic_bp.route('/branches', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_branches():
    query = db.session.query(Batch.branch).filter_by(is_active=True)
    degree = request.args.get('degree')
    if degree:
        query = query.filter(Batch.degree == degree)
    rows = query.distinct().order_by(Batch.branch).all()
    return success([row[0] for row in rows])


@academic_bp.route('/batches', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_batches():
    query = Batch.query.filter_by(is_active=True)
    for arg, column in (('degree', Batch.degree), ('branch', Batch.branch)):
        value = request.args.get(arg)
        if value:
            query = query.filter(column == value)
    batches = query.order_by(Batch.batch.desc(), Batch.branch).all()
    return success([batch.to_dict() for batch in batches])


@academic_bp.route('/batches/find', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def find_batch():
    degree, branch, batch_year = require_args('degree', 'branch', 'batch')
    batch = Batch.query.filter_by(degree=degree, branch=branch, batch=batch_year, is_active=True).first()
    if batch is None:
        raise NotFoundError('Batch not found')
    return success(batch.to_dict())


@academic_bp.route('/batches', methods=['POST'])
@roles_required('ADMIN')
def create_batch():
    data = get_json_body()
    require_fields(data, ['degree', 'branch', 'batch'])
    batch_year = str(data['batch']).strip()
    if not batch_year.isdigit() or len(batch_year) != 4:
        raise APIError('batch must be a 4 digit year')

    degree = str(data['degree']).strip()
    branch = str(data['branch']).strip()
    if Batch.query.filter_by(degree=degree, branch=branch, batch=batch_year).first():
        raise ConflictError('Batch already exists')

    batch_years = data.get('batchYears') or f"{batch_year}-{int(batch_year) + 4}"
    batch = Batch(degree=degree, branch=branch, batch=batch_year, batch_years=batch_years)
    db.session.add(batch)
    db.session.commit()
    logging.info(f"Created batch {degree} {branch} {batch_year}")
    return success(batch.to_dict(), 'Batch created successfully', 201)


@academic_bp.route('/batches/<int:batch_id>', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def get_batch(batch_id):
    return success(get_or_404(Batch, batch_id, 'Batch').to_dict())


@academic_bp.route('/batches/<int:batch_id>', methods=['PUT'])
@roles_required('ADMIN')
def update_batch(batch_id):
    batch = get_or_404(Batch, batch_id, 'Batch')
    data = get_json_body()
    for key in ('degree', 'branch', 'batchYears'):
        if data.get(key):
            setattr(batch, 'batch_years' if key == 'batchYears' else key, str(data[key]).strip())
    if 'isActive' in data:
        batch.is_active = bool(data['isActive'])

    with db.session.no_autoflush:
        duplicate = Batch.query.filter(Batch.id != batch.id, Batch.degree == batch.degree,
                                       Batch.branch == batch.branch, Batch.batch == batch.batch).first()
    if duplicate:
        raise ConflictError('Another batch with the same degree, branch and year exists')
    db.session.commit()
    return success(batch.to_dict(), 'Batch updated successfully')


@academic_bp.route('/batches/<int:batch_id>', methods=['DELETE'])
@roles_required('ADMIN')
def delete_batch(batch_id):
    batch = get_or_404(Batch, batch_id, 'Batch')
    if Semester.query.filter_by(batch_id=batch.id).count() or Student.query.filter_by(batch_id=batch.id).count():
        raise ConflictError('Batch has semesters or students and cannot be deleted')
    db.session.delete(batch)
    db.session.commit()
    return success(message='Batch deleted successfully')


# Semesters

@academic_bp.route('/semesters', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_semesters():
    query = Semester.query.filter_by(is_active=True)
    batch_id = request.args.get('batchId')
    if batch_id:
        query = query.filter(Semester.batch_id == parse_int(batch_id, 'batchId'))
    semesters = query.order_by(Semester.batch_id, Semester.semester_number).all()
    return success([semester.to_dict() for semester in semesters])


@academic_bp.route('/semesters/by-batch-branch', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def semesters_by_batch_branch():
    degree, batch_year, branch = require_args('degree', 'batch', 'branch')
    semesters = (Semester.query.join(Batch)
                 .filter(Batch.degree == degree, Batch.batch == batch_year, Batch.branch == branch,
                         Semester.is_active.is_(True))
                 .order_by(Semester.semester_number).all())
    return success([semester.to_dict() for semester in semesters])


def _check_semester_dates(start_date, end_date):
    if start_date > end_date:
        raise APIError('startDate cannot be after endDate')


@academic_bp.route('/semesters', methods=['POST'])
@roles_required('ADMIN')
def create_semester():
    data = get_json_body()
    require_fields(data, ['batchId', 'semesterNumber', 'startDate', 'endDate'])
    batch = get_or_404(Batch, parse_int(data['batchId'], 'batchId'), 'Batch')
    number = parse_int(data['semesterNumber'], 'semesterNumber', 1, 8)
    start_date = parse_date(data['startDate'], 'startDate')
    end_date = parse_date(data['endDate'], 'endDate')
    _check_semester_dates(start_date, end_date)

    if Semester.query.filter_by(batch_id=batch.id, semester_number=number).first():
        raise ConflictError(f"Semester {number} already exists for this batch")

    semester = Semester(batch_id=batch.id, semester_number=number, start_date=start_date, end_date=end_date)
    db.session.add(semester)
    db.session.commit()
    return success(semester.to_dict(), 'Semester created successfully', 201)


@academic_bp.route('/semesters/<int:semester_id>', methods=['PUT'])
@roles_required('ADMIN')
def update_semester(semester_id):
    semester = get_or_404(Semester, semester_id, 'Semester')
    data = get_json_body()
    if 'semesterNumber' in data:
        number = parse_int(data['semesterNumber'], 'semesterNumber', 1, 8)
        clash = Semester.query.filter(Semester.id != semester.id, Semester.batch_id == semester.batch_id,
                                      Semester.semester_number == number).first()
        if clash:
            raise ConflictError(f"Semester {number} already exists for this batch")
        semester.semester_number = number
    if 'startDate' in data:
        semester.start_date = parse_date(data['startDate'], 'startDate')
    if 'endDate' in data:
        semester.end_date = parse_date(data['endDate'], 'endDate')
    if 'isActive' in data:
        semester.is_active = bool(data['isActive'])
    _check_semester_dates(semester.start_date, semester.end_date)
    db.session.commit()
    return success(semester.to_dict(), 'Semester updated successfully')


@academic_bp.route('/semesters/<int:semester_id>', methods=['DELETE'])
@roles_required('ADMIN')
def delete_semester(semester_id):
    semester = get_or_404(Semester, semester_id, 'Semester')
    if Course.query.filter_by(semester_id=semester.id).count():
        raise ConflictError('Semester has courses and cannot be deleted')
    db.session.delete(semester)
    db.session.commit()
    return success(message='Semester deleted successfully')


# Courses

@academic_bp.route('/courses', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_courses():
    query = Course.query.filter_by(is_active=True)
    semester_id = request.args.get('semesterId')
    if semester_id:
        query = query.filter(Course.semester_id == parse_int(semester_id, 'semesterId'))
    return success([course.to_dict() for course in query.order_by(Course.course_code).all()])


@academic_bp.route('/semesters/<int:semester_id>/courses', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_semester_courses(semester_id):
    get_or_404(Semester, semester_id, 'Semester')
    courses = Course.query.filter_by(semester_id=semester_id, is_active=True).order_by(Course.course_code).all()
    return success([course.to_dict() for course in courses])


@academic_bp.route('/semesters/<int:semester_id>/courses', methods=['POST'])
@roles_required('ADMIN')
def create_course(semester_id):
    semester = get_or_404(Semester, semester_id, 'Semester')
    values = _course_values_from_json(get_json_body())
    if Course.query.filter_by(course_code=values['course_code']).first():
        raise ConflictError(f"Course code {values['course_code']} already exists")

    course = Course(semester_id=semester.id, **values)
    db.session.add(course)
    db.session.commit()
    return success(course.to_dict(), 'Course created successfully', 201)


@academic_bp.route('/courses/<int:course_id>', methods=['PUT'])
@roles_required('ADMIN')
def update_course(course_id):
    course = get_or_404(Course, course_id, 'Course')
    values = _course_values_from_json(get_json_body(), course)
    clash = Course.query.filter(Course.id != course.id, Course.course_code == values['course_code']).first()
    if clash:
        raise ConflictError(f"Course code {values['course_code']} already exists")
    for field, value in values.items():
        setattr(course, field, value)
    db.session.commit()
    return success(course.to_dict(), 'Course updated successfully')


@academic_bp.route('/courses/<int:course_id>', methods=['DELETE'])
@roles_required('ADMIN')
def delete_course(course_id):
    course = get_or_404(Course, course_id, 'Course')
    course.is_active = False
    db.session.commit()
    return success(message='Course deleted successfully')


@academic_bp.route('/courses/import', methods=['POST'])
@roles_required('ADMIN')
def import_courses():
    semester = get_or_404(Semester, parse_int(request.form.get('semesterId'), 'semesterId'), 'Semester')
    filepath = save_upload()
    try:
        rows = get_excel_handler().read_course_sheet(filepath)
    except ValueError as e:
        raise APIError(str(e))
    finally:
        remove_upload(filepath)

    imported = 0
    skipped = []
    seen = set()
    for index, row in enumerate(rows, 2):
        try:
            values = validate_course_values(row)
        except APIError as e:
            skipped.append({'row': index, 'reason': e.message})
            continue
        if values['course_code'] in seen or Course.query.filter_by(course_code=values['course_code']).first():
            skipped.append({'row': index, 'reason': f"Course code {values['course_code']} already exists"})
            continue
        seen.add(values['course_code'])
        db.session.add(Course(semester_id=semester.id, **values))
        imported += 1

    db.session.commit()
    for item in skipped:
        logging.warning(f"Course import skipped row {item['row']}: {item['reason']}")
    return success({'imported': imported, 'skipped': skipped}, f"Imported {imported} courses")


# Sections

@academic_bp.route('/courses/<int:course_id>/sections', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_sections(course_id):
    course = get_or_404(Course, course_id, 'Course')
    return success([section.to_dict() for section in course.sections if section.is_active])


def _section_number(name):
    suffix = name.rsplit(' ', 1)[-1]
    return int(suffix) if suffix.isdigit() else 0


@academic_bp.route('/courses/<int:course_id>/sections', methods=['POST'])
@roles_required('ADMIN')
def add_sections(course_id):
    course = get_or_404(Course, course_id, 'Course')
    data = get_json_body()
    count = parse_int(data.get('numberOfSections'), 'numberOfSections', 1, 20)
    start = max([_section_number(section.section_name) for section in course.sections], default=0)

    created = []
    for number in range(start + 1, start + count + 1):
        section = Section(course_id=course.id, section_name=f"Batch {number}")
        db.session.add(section)
        created.append(section)
    db.session.commit()
    return success([section.to_dict() for section in created], f"Added {count} sections", 201)


@academic_bp.route('/courses/<int:course_id>/sections/<int:section_id>', methods=['DELETE'])
@roles_required('ADMIN')
def delete_section(course_id, section_id):
    section = get_or_404(Section, section_id, 'Section')
    if section.course_id != course_id:
        raise NotFoundError('Section not found for this course')
    for model, reason in SECTION_REFERENCES:
        if model.query.filter_by(section_id=section.id).count():
            raise ConflictError(reason)
    StaffCourse.query.filter_by(section_id=section.id).delete()
    db.session.delete(section)
    db.session.commit()
    return success(message='Section deleted successfully')


# Elective buckets

@academic_bp.route('/semesters/<int:semester_id>/buckets', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_buckets(semester_id):
    get_or_404(Semester, semester_id, 'Semester')
    buckets = ElectiveBucket.query.filter_by(semester_id=semester_id).order_by(ElectiveBucket.bucket_number).all()
    return success([bucket.to_dict() for bucket in buckets])


@academic_bp.route('/semesters/<int:semester_id>/buckets', methods=['POST'])
@roles_required('ADMIN')
def create_bucket(semester_id):
    get_or_404(Semester, semester_id, 'Semester')
    data = request.get_json(silent=True) or {}
    current_max = (db.session.query(func.max(ElectiveBucket.bucket_number))
                   .filter(ElectiveBucket.semester_id == semester_id).scalar()) or 0
    number = current_max + 1
    name = str(data.get('bucketName') or f"Elective {number}").strip()

    bucket = ElectiveBucket(semester_id=semester_id, bucket_number=number, bucket_name=name)
    db.session.add(bucket)
    db.session.commit()
    return success(bucket.to_dict(), 'Bucket created successfully', 201)


@academic_bp.route('/buckets/<int:bucket_id>', methods=['PUT'])
@roles_required('ADMIN')
def rename_bucket(bucket_id):
    bucket = get_or_404(ElectiveBucket, bucket_id, 'Bucket')
    name = str(get_json_body().get('bucketName') or '').strip()
    if not name:
        raise APIError('Bucket name cannot be empty')
    bucket.bucket_name = name
    db.session.commit()
    return success(bucket.to_dict(), 'Bucket renamed successfully')


@academic_bp.route('/buckets/<int:bucket_id>/courses', methods=['POST'])
@roles_required('ADMIN')
def add_bucket_courses(bucket_id):
    bucket = get_or_404(ElectiveBucket, bucket_id, 'Bucket')
    codes = get_json_body().get('courseCodes')
    if not isinstance(codes, list) or not codes:
        raise APIError('courseCodes must be a non-empty list')

    added = []
    errors = []
    for raw_code in codes:
        code = str(raw_code).strip().upper()
        course = Course.query.filter_by(course_code=code).first()
        if course is None or not course.is_active:
            errors.append(f"{code}: course not found")
            continue
        if course.semester_id != bucket.semester_id:
            errors.append(f"{code}: course belongs to a different semester")
            continue
        existing = ElectiveBucketCourse.query.filter_by(course_id=course.id).first()
        if existing is not None:
            errors.append(f"{code}: course is already in a bucket")
            continue
        db.session.add(ElectiveBucketCourse(bucket_id=bucket.id, course_id=course.id))
        db.session.flush()
        added.append(code)

    db.session.commit()
    return success({'added': added, 'errors': errors, 'bucket': bucket.to_dict()},
                   f"Added {len(added)} courses to bucket")


@academic_bp.route('/buckets/<int:bucket_id>/courses/<course_code>', methods=['DELETE'])
@roles_required('ADMIN')
def remove_bucket_course(bucket_id, course_code):
    get_or_404(ElectiveBucket, bucket_id, 'Bucket')
    entry = (ElectiveBucketCourse.query.join(Course)
             .filter(ElectiveBucketCourse.bucket_id == bucket_id, Course.course_code == course_code.upper())
             .first())
    if entry is None:
        raise NotFoundError('Course not found in this bucket')
    db.session.delete(entry)
    db.session.commit()
    return success(message='Course removed from bucket')


@academic_bp.route('/buckets/<int:bucket_id>', methods=['DELETE'])
@roles_required('ADMIN')
def delete_bucket(bucket_id):
    bucket = get_or_404(ElectiveBucket, bucket_id, 'Bucket')
    StudentElectiveSelection.query.filter_by(bucket_id=bucket.id).delete()
    db.session.delete(bucket)
    db.session.commit()
    return success(message='Bucket deleted successfully')
