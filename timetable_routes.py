from flask import Blueprint

from api_helpers import (APIError, ConflictError, NotFoundError, get_json_body, get_or_404, parse_int,
                         require_args, require_fields, success)
from attendance import day_order
from auth import roles_required
from models import DAYS, Batch, Course, Department, Section, Semester, Timetable, db

timetable_bp = Blueprint('timetable', __name__, url_prefix='/api/admin/timetable')


def _sorted_entries(entries):
    return sorted(entries, key=lambda entry: (day_order(entry.day_of_week), entry.period_number))


def _validated_entry(data, semester):
    course = get_or_404(Course, parse_int(data.get('courseId'), 'courseId'), 'Course')
    if course.semester_id != semester.id:
        raise APIError('Course does not belong to this semester')

    section_id = data.get('sectionId')
    if section_id:
        section = get_or_404(Section, parse_int(section_id, 'sectionId'), 'Section')
        if section.course_id != course.id:
            raise APIError('Section does not belong to this course')
        section_id = section.id
    else:
        section_id = None

    day = str(data.get('dayOfWeek') or '').strip().upper()
    if day not in DAYS:
        raise APIError(f"dayOfWeek must be one of {', '.join(DAYS)}")
    period = parse_int(data.get('periodNumber'), 'periodNumber', 1, 8)

    department_id = data.get('departmentId')
    if department_id:
        department_id = get_or_404(Department, parse_int(department_id, 'departmentId'), 'Department').id
    return {'course_id': course.id, 'section_id': section_id, 'day_of_week': day,
            'period_number': period, 'department_id': department_id or None}


def _check_slot_free(semester_id, day, period, exclude_id=None):
    query = Timetable.query.filter_by(semester_id=semester_id, day_of_week=day, period_number=period,
                                      is_active=True)
    if exclude_id is not None:
        query = query.filter(Timetable.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(f"{day} period {period} is already allocated in this semester")


@timetable_bp.route('/semester/<int:semester_id>', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def semester_timetable(semester_id):
    get_or_404(Semester, semester_id, 'Semester')
    entries = Timetable.query.filter_by(semester_id=semester_id, is_active=True).all()
    return success([entry.to_dict() for entry in _sorted_entries(entries)])


@timetable_bp.route('/by-filters', methods=['GET'])
@roles_required('ADMIN', 'STAFF')
def timetable_by_filters():
    degree, batch_year, branch, semester_number = require_args('degree', 'batch', 'branch', 'semesterNumber')
    semester = (Semester.query.join(Batch)
                .filter(Batch.degree == degree, Batch.batch == batch_year, Batch.branch == branch,
                        Semester.semester_number == parse_int(semester_number, 'semesterNumber'))
                .first())
    if semester is None:
        raise NotFoundError('Semester not found for the selected filters')
    entries = Timetable.query.filter_by(semester_id=semester.id, is_active=True).all()
    return success({'semesterId': semester.id, 'entries': [entry.to_dict() for entry in _sorted_entries(entries)]})


@timetable_bp.route('/entry', methods=['POST'])
@roles_required('ADMIN')
def create_entry():
    data = get_json_body()
    require_fields(data, ['semesterId', 'courseId', 'dayOfWeek', 'periodNumber'])
    semester = get_or_404(Semester, parse_int(data['semesterId'], 'semesterId'), 'Semester')
    values = _validated_entry(data, semester)
    _check_slot_free(semester.id, values['day_of_week'], values['period_number'])

    entry = Timetable(semester_id=semester.id, **values)
    db.session.add(entry)
    db.session.commit()
    return success(entry.to_dict(), 'Timetable entry created', 201)


@timetable_bp.route('/entry/<int:entry_id>', methods=['PUT'])
@roles_required('ADMIN')
def update_entry(entry_id):
    entry = get_or_404(Timetable, entry_id, 'Timetable entry')
    if not entry.is_active:
        raise NotFoundError('Timetable entry not found')
    data = get_json_body()
    merged = {
        'courseId': data.get('courseId', entry.course_id),
        'sectionId': data.get('sectionId', entry.section_id),
        'dayOfWeek': data.get('dayOfWeek', entry.day_of_week),
        'periodNumber': data.get('periodNumber', entry.period_number),
        'departmentId': data.get('departmentId', entry.department_id),
    }
    semester = db.session.get(Semester, entry.semester_id)
    values = _validated_entry(merged, semester)
    _check_slot_free(semester.id, values['day_of_week'], values['period_number'], exclude_id=entry.id)

    for field, value in values.items():
        setattr(entry, field, value)
    db.session.commit()
    return success(entry.to_dict(), 'Timetable entry updated')


@timetable_bp.route('/entry/<int:entry_id>', methods=['DELETE'])
@roles_required('ADMIN')
def delete_entry(entry_id):
    entry = get_or_404(Timetable, entry_id, 'Timetable entry')
    entry.is_active = False
    db.session.commit()
    return success(message='Timetable entry deleted')
