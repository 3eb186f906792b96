import logging

from flask import Blueprint, request

from academic_routes import COURSE_FIELDS, HOUR_FIELDS, to_count, validate_course_values
from api_helpers import (APIError, ConflictError, NotFoundError, get_excel_handler, get_json_body, get_or_404,
                         parse_int, remove_upload, require_fields, save_upload, success)
from auth import roles_required
from models import (ELECTIVE_CATEGORIES, Batch, Course, Department, Regulation, RegulationCourse, Vertical,
                    VerticalCourse, db)

regulation_bp = Blueprint('regulation', __name__, url_prefix='/api/admin')


def course_type_for_hours(lecture, tutorial, practical, experiential):
    if experiential > 0:
        return 'EXPERIENTIAL LEARNING'
    if practical > 0:
        return 'INTEGRATED' if lecture > 0 or tutorial > 0 else 'PRACTICAL'
    return 'THEORY'


def regulation_course_values(values):
    """Validate one curriculum row given with model field names."""
    values = dict(values)
    if not str(values.get('type') or '').strip():
        hours = [to_count(values.get(field), field) for field in HOUR_FIELDS]
        values['type'] = course_type_for_hours(*hours)
    result = validate_course_values(values)
    result['semester_number'] = parse_int(values.get('semester_number'), 'semesterNumber', 1, 8)
    return result


def _get_regulation(regulation_id):
    regulation = get_or_404(Regulation, regulation_id, 'Regulation')
    if not regulation.is_active:
        raise NotFoundError('Regulation not found')
    return regulation


def _add_regulation_courses(regulation, rows):
    """Insert curriculum rows, skipping invalid ones and codes the regulation already has."""
    existing = {course.course_code for course in
                RegulationCourse.query.filter_by(regulation_id=regulation.id).all()}
    imported = 0
    skipped = []
    for index, row in enumerate(rows, 2):
        try:
            values = regulation_course_values(row)
        except APIError as e:
            skipped.append({'row': index, 'reason': e.message})
            continue
        if values['course_code'] in existing:
            skipped.append({'row': index, 'reason': f"Course code {values['course_code']} already exists"})
            continue
        existing.add(values['course_code'])
        db.session.add(RegulationCourse(regulation_id=regulation.id, **values))
        imported += 1

    db.session.commit()
    for item in skipped:
        logging.warning(f"Regulation {regulation.id} import skipped row {item['row']}: {item['reason']}")
    return {'imported': imported, 'skipped': skipped}


# Regulations

@regulation_bp.route('/regulations', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_regulations():
    regulations = (Regulation.query.filter_by(is_active=True)
                   .order_by(Regulation.regulation_year.desc(), Regulation.id).all())
    return success([regulation.to_dict() for regulation in regulations])


@regulation_bp.route('/regulations', methods=['POST'])
@roles_required('ADMIN')
def create_regulation():
    data = get_json_body()
    require_fields(data, ['departmentId', 'regulationYear'])
    department = get_or_404(Department, parse_int(data['departmentId'], 'departmentId'), 'Department')
    year = str(data['regulationYear']).strip()
    if not year.isdigit() or len(year) != 4:
        raise APIError('regulationYear must be a 4 digit year')
    if Regulation.query.filter_by(department_id=department.id, regulation_year=year).first():
        raise ConflictError(f"Regulation {year} already exists for {department.code}")

    regulation = Regulation(department_id=department.id, regulation_year=year)
    db.session.add(regulation)
    db.session.commit()
    return success(regulation.to_dict(), 'Regulation created successfully', 201)


@regulation_bp.route('/regulations/<int:regulation_id>/courses', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_regulation_courses(regulation_id):
    _get_regulation(regulation_id)
    query = RegulationCourse.query.filter_by(regulation_id=regulation_id, is_active=True)
    if request.args.get('semesterNumber'):
        query = query.filter(RegulationCourse.semester_number ==
                             parse_int(request.args['semesterNumber'], 'semesterNumber'))
    courses = query.order_by(RegulationCourse.semester_number, RegulationCourse.course_code).all()
    return success([course.to_dict() for course in courses])


@regulation_bp.route('/regulations/courses', methods=['POST'])
@roles_required('ADMIN')
def import_regulation_courses():
    data = get_json_body()
    require_fields(data, ['regulationId'])
    regulation = _get_regulation(parse_int(data['regulationId'], 'regulationId'))
    courses = data.get('courses')
    if not isinstance(courses, list) or not courses:
        raise APIError('courses must be a non-empty list')

    rows = []
    for course in courses:
        if not isinstance(course, dict):
            raise APIError('Each course must be an object')
        row = {field: course.get(key) for key, field in COURSE_FIELDS.items()}
        row['semester_number'] = course.get('semesterNumber')
        rows.append(row)
    result = _add_regulation_courses(regulation, rows)
    return success(result, f"Imported {result['imported']} courses")


@regulation_bp.route('/regulations/<int:regulation_id>/courses/import', methods=['POST'])
@roles_required('ADMIN')
def upload_regulation_courses(regulation_id):
    regulation = _get_regulation(regulation_id)
    filepath = save_upload()
    try:
        rows = get_excel_handler().read_regulation_sheet(filepath)
    except ValueError as e:
        raise APIError(str(e))
    finally:
        remove_upload(filepath)

    result = _add_regulation_courses(regulation, rows)
    return success(result, f"Imported {result['imported']} courses")


@regulation_bp.route('/regulations/allocate-to-batch', methods=['POST'])
@roles_required('ADMIN')
def allocate_regulation_to_batch():
    """Link a batch to a regulation and create its curriculum in the semesters the batch already has."""
    data = get_json_body()
    require_fields(data, ['batchId', 'regulationId'])
    batch = get_or_404(Batch, parse_int(data['batchId'], 'batchId'), 'Batch')
    regulation = _get_regulation(parse_int(data['regulationId'], 'regulationId'))
    batch.regulation_id = regulation.id

    semesters = {semester.semester_number: semester for semester in batch.semesters}
    created = []
    skipped = []
    reg_courses = (RegulationCourse.query.filter_by(regulation_id=regulation.id, is_active=True)
                   .order_by(RegulationCourse.semester_number, RegulationCourse.course_code).all())
    for reg_course in reg_courses:
        semester = semesters.get(reg_course.semester_number)
        if semester is None:
            skipped.append({'courseCode': reg_course.course_code,
                            'reason': f"Semester {reg_course.semester_number} does not exist for this batch"})
            continue
        if Course.query.filter_by(course_code=reg_course.course_code).first():
            skipped.append({'courseCode': reg_course.course_code, 'reason': 'Course code already exists'})
            continue
        values = {field: getattr(reg_course, field) for field in COURSE_FIELDS.values()}
        db.session.add(Course(semester_id=semester.id, **values))
        created.append(reg_course.course_code)

    db.session.commit()
    logging.info(f"Allocated regulation {regulation.id} to batch {batch.id}: {len(created)} courses created")
    return success({'batchId': batch.id, 'regulationId': regulation.id, 'created': created, 'skipped': skipped},
                   'Regulation allocated to batch')


@regulation_bp.route('/batches/<int:batch_id>/regulation', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def batch_regulation(batch_id):
    batch = get_or_404(Batch, batch_id, 'Batch')
    if batch.regulation is None or not batch.regulation.is_active:
        raise NotFoundError('No active regulation found for this batch')
    return success(batch.regulation.to_dict())


# Verticals

@regulation_bp.route('/regulations/<int:regulation_id>/verticals', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_verticals(regulation_id):
    _get_regulation(regulation_id)
    verticals = (Vertical.query.filter_by(regulation_id=regulation_id, is_active=True)
                 .order_by(Vertical.vertical_name).all())
    return success([vertical.to_dict() for vertical in verticals])


@regulation_bp.route('/regulations/verticals', methods=['POST'])
@roles_required('ADMIN')
def create_vertical():
    data = get_json_body()
    require_fields(data, ['regulationId', 'verticalName'])
    regulation = _get_regulation(parse_int(data['regulationId'], 'regulationId'))
    name = str(data['verticalName']).strip()
    if Vertical.query.filter_by(regulation_id=regulation.id, vertical_name=name).first():
        raise ConflictError(f"Vertical {name} already exists for this regulation")

    vertical = Vertical(regulation_id=regulation.id, vertical_name=name)
    db.session.add(vertical)
    db.session.commit()
    return success(vertical.to_dict(), 'Vertical added successfully', 201)


@regulation_bp.route('/regulations/<int:regulation_id>/courses/available', methods=['GET'])
@roles_required('ADMIN')
def available_vertical_courses(regulation_id):
    _get_regulation(regulation_id)
    courses = (RegulationCourse.query.outerjoin(VerticalCourse, VerticalCourse.reg_course_id == RegulationCourse.id)
               .filter(RegulationCourse.regulation_id == regulation_id,
                       RegulationCourse.is_active.is_(True),
                       RegulationCourse.category.in_(ELECTIVE_CATEGORIES),
                       VerticalCourse.id.is_(None))
               .order_by(RegulationCourse.semester_number, RegulationCourse.course_code).all())
    return success([course.to_dict() for course in courses])


@regulation_bp.route('/regulations/verticals/courses', methods=['POST'])
@roles_required('ADMIN')
def allocate_vertical_courses():
    data = get_json_body()
    require_fields(data, ['verticalId'])
    vertical = get_or_404(Vertical, parse_int(data['verticalId'], 'verticalId'), 'Vertical')
    course_ids = data.get('courseIds')
    if not isinstance(course_ids, list) or not course_ids:
        raise APIError('courseIds must be a non-empty list')

    added = []
    errors = []
    for raw_id in course_ids:
        reg_course = db.session.get(RegulationCourse, parse_int(raw_id, 'courseIds'))
        if reg_course is None or not reg_course.is_active:
            errors.append(f"{raw_id}: course not found")
            continue
        if reg_course.regulation_id != vertical.regulation_id:
            errors.append(f"{reg_course.course_code}: course belongs to a different regulation")
            continue
        if reg_course.category not in ELECTIVE_CATEGORIES:
            errors.append(f"{reg_course.course_code}: only PEC and OEC courses can join a vertical")
            continue
        if VerticalCourse.query.filter_by(reg_course_id=reg_course.id).first():
            errors.append(f"{reg_course.course_code}: course is already in a vertical")
            continue
        db.session.add(VerticalCourse(vertical_id=vertical.id, reg_course_id=reg_course.id))
        db.session.flush()
        added.append(reg_course.course_code)

    db.session.commit()
    return success({'added': added, 'errors': errors}, f"Allocated {len(added)} courses to {vertical.vertical_name}")


@regulation_bp.route('/verticals/<int:vertical_id>/courses', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def list_vertical_courses(vertical_id):
    get_or_404(Vertical, vertical_id, 'Vertical')
    query = (RegulationCourse.query.join(VerticalCourse, VerticalCourse.reg_course_id == RegulationCourse.id)
             .filter(VerticalCourse.vertical_id == vertical_id, RegulationCourse.is_active.is_(True)))
    if request.args.get('semesterNumber'):
        query = query.filter(RegulationCourse.semester_number ==
                             parse_int(request.args['semesterNumber'], 'semesterNumber'))
    return success([course.to_dict() for course in query.order_by(RegulationCourse.course_code).all()])
