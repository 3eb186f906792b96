import logging

from flask import Blueprint, Response, g, request

from api_helpers import (APIError, ConflictError, ForbiddenError, NotFoundError, get_excel_handler, get_json_body,
                         get_or_404, parse_int, remove_upload, save_upload, success)
from auth import roles_required
from grading import co_mark, consolidated_co_mark, partition_averages
from models import (Batch, COTool, Course, CourseOutcome, CoursePartition, Semester, StaffCourse,
                    Student, StudentCourse, StudentToolMark, db)

marks_bp = Blueprint('marks', __name__, url_prefix='/api')

PARTITION_FIELDS = (('THEORY', 'theoryCount', 'theory_count'),
                    ('PRACTICAL', 'practicalCount', 'practical_count'),
                    ('EXPERIENTIAL', 'experientialCount', 'experiential_count'))


def _course_by_code(course_code):
    course = Course.query.filter_by(course_code=course_code.upper()).first()
    if course is None or not course.is_active:
        raise NotFoundError('Course not found')
    return course


def _check_course_access(course):
    user = g.current_user
    if user.role == 'ADMIN':
        return
    if StaffCourse.query.filter_by(user_id=user.id, course_id=course.id).first() is None:
        raise ForbiddenError('You are not assigned to this course')


def _visible_enrollments(course):
    """Enrollments the caller may grade: all for admin, own sections for staff."""
    query = StudentCourse.query.filter_by(course_id=course.id)
    if g.current_user.role != 'ADMIN':
        section_ids = [row.section_id for row in
                       StaffCourse.query.filter_by(user_id=g.current_user.id, course_id=course.id).all()]
        query = query.filter(StudentCourse.section_id.in_(section_ids))
    return query.order_by(StudentCourse.roll_number).all()


def _partition_counts(data):
    counts = {}
    for _, key, _ in PARTITION_FIELDS:
        counts[key] = parse_int(data.get(key, 0), key, 0, 20)
    return counts


def _next_position(course):
    positions = [co.position for co in CourseOutcome.query.filter_by(course_id=course.id).all()]
    return max(positions, default=0) + 1


def _add_cos(course, co_type, count):
    position = _next_position(course)
    for offset in range(count):
        db.session.add(CourseOutcome(course_id=course.id, co_number=f"CO{position + offset}",
                                     position=position + offset, co_type=co_type))
    db.session.flush()


# Partitions and course outcomes

@marks_bp.route('/staff/partitions/<course_code>', methods=['GET'])
@roles_required('STAFF', 'ADMIN')
def get_partitions(course_code):
    course = _course_by_code(course_code)
    partition = CoursePartition.query.filter_by(course_id=course.id).first()
    if partition is None:
        return success({'partitionId': None, 'courseId': course.id, 'theoryCount': 0,
                        'practicalCount': 0, 'experientialCount': 0})
    return success(partition.to_dict())


@marks_bp.route('/staff/partitions/<course_code>', methods=['POST'])
@roles_required('STAFF', 'ADMIN')
def save_partitions(course_code):
    course = _course_by_code(course_code)
    _check_course_access(course)
    if CoursePartition.query.filter_by(course_id=course.id).first():
        raise ConflictError('Partitions already exist for this course, use update instead')

    counts = _partition_counts(get_json_body())
    partition = CoursePartition(course_id=course.id, theory_count=counts['theoryCount'],
                                practical_count=counts['practicalCount'],
                                experiential_count=counts['experientialCount'])
    db.session.add(partition)
    for co_type, key, _ in PARTITION_FIELDS:
        _add_cos(course, co_type, counts[key])

    db.session.commit()
    logging.info(f"Saved partitions for {course.course_code}: {counts}")
    return success(partition.to_dict(), 'Partitions saved and course outcomes created', 201)


@marks_bp.route('/staff/partitions/<course_code>', methods=['PUT'])
@roles_required('STAFF', 'ADMIN')
def update_partitions(course_code):
    course = _course_by_code(course_code)
    _check_course_access(course)
    partition = CoursePartition.query.filter_by(course_id=course.id).first()
    if partition is None:
        raise NotFoundError('Partitions not found for this course')

    counts = _partition_counts(get_json_body())
    for co_type, key, field in PARTITION_FIELDS:
        existing = (CourseOutcome.query.filter_by(course_id=course.id, co_type=co_type)
                    .order_by(CourseOutcome.position).all())
        wanted = counts[key]
        if wanted > len(existing):
            _add_cos(course, co_type, wanted - len(existing))
        for co in reversed(existing[wanted:]):
            if co.tools:
                raise ConflictError(f"{co.co_number} has assessment tools and cannot be removed")
            db.session.delete(co)
        setattr(partition, field, wanted)

    db.session.commit()
    return success(partition.to_dict(), 'Partitions updated')


@marks_bp.route('/staff/cos/<course_code>', methods=['GET'])
@roles_required('STAFF', 'ADMIN')
def list_cos(course_code):
    course = _course_by_code(course_code)
    cos = CourseOutcome.query.filter_by(course_id=course.id).order_by(CourseOutcome.position).all()
    return success([co.to_dict(include_tools=True) for co in cos])


# Assessment tools

def _validate_tool(tool):
    name = str(tool.get('toolName') or '').strip()
    if not name:
        raise APIError('toolName is required')
    weightage = parse_int(tool.get('weightage'), 'weightage', 0, 100)
    max_marks = parse_int(tool.get('maxMarks'), 'maxMarks')
    if max_marks <= 0:
        raise APIError('maxMarks must be greater than 0')
    return name, weightage, max_marks


@marks_bp.route('/staff/tools/<int:co_id>', methods=['GET'])
@roles_required('STAFF', 'ADMIN')
def list_tools(co_id):
    co = get_or_404(CourseOutcome, co_id, 'Course outcome')
    return success([tool.to_dict() for tool in co.tools])


@marks_bp.route('/staff/tools/<int:co_id>/save', methods=['POST'])
@roles_required('STAFF', 'ADMIN')
def save_tools(co_id):
    co = get_or_404(CourseOutcome, co_id, 'Course outcome')
    _check_course_access(db.session.get(Course, co.course_id))
    tools = get_json_body().get('tools')
    if not isinstance(tools, list) or not tools:
        raise APIError('tools must be a non-empty list')

    validated = []
    names = set()
    for tool in tools:
        name, weightage, max_marks = _validate_tool(tool)
        if name.lower() in names:
            raise APIError(f"Duplicate tool name: {name}")
        names.add(name.lower())
        tool_id = tool.get('toolId')
        validated.append((parse_int(tool_id, 'toolId') if tool_id is not None else None, name, weightage, max_marks))

    total = sum(weightage for _, _, weightage, _ in validated)
    if total != 100:
        raise APIError(f"Total weightage must be 100, got {total}")

    existing = {tool.id: tool for tool in co.tools}
    kept = set()
    for tool_id, name, weightage, max_marks in validated:
        tool = existing.get(tool_id) if tool_id is not None else None
        if tool is None:
            tool = COTool(co_id=co.id)
            co.tools.append(tool)
        else:
            kept.add(tool.id)
        tool.tool_name = name
        tool.weightage = weightage
        tool.max_marks = max_marks

    for tool_id, tool in existing.items():
        if tool_id not in kept:
            co.tools.remove(tool)

    db.session.commit()
    return success([tool.to_dict() for tool in co.tools], 'Tools saved successfully')


@marks_bp.route('/staff/tools/<int:tool_id>', methods=['PUT'])
@roles_required('STAFF', 'ADMIN')
def update_tool(tool_id):
    tool = get_or_404(COTool, tool_id, 'Tool')
    co = tool.course_outcome
    _check_course_access(db.session.get(Course, co.course_id))
    data = get_json_body()
    merged = {'toolName': data.get('toolName', tool.tool_name),
              'weightage': data.get('weightage', tool.weightage),
              'maxMarks': data.get('maxMarks', tool.max_marks)}
    name, weightage, max_marks = _validate_tool(merged)

    others = [other for other in co.tools if other.id != tool.id]
    if any(other.tool_name.lower() == name.lower() for other in others):
        raise APIError(f"Duplicate tool name: {name}")
    if sum(other.weightage for other in others) + weightage > 100:
        raise APIError('Total weightage cannot exceed 100')

    tool.tool_name = name
    tool.weightage = weightage
    tool.max_marks = max_marks
    db.session.commit()
    return success(tool.to_dict(), 'Tool updated successfully')


@marks_bp.route('/staff/tools/<int:tool_id>', methods=['DELETE'])
@roles_required('STAFF', 'ADMIN')
def delete_tool(tool_id):
    tool = get_or_404(COTool, tool_id, 'Tool')
    _check_course_access(db.session.get(Course, tool.course_outcome.course_id))
    db.session.delete(tool)
    db.session.commit()
    return success(message='Tool deleted successfully')


# Student marks

@marks_bp.route('/staff/marks/<int:tool_id>', methods=['GET'])
@roles_required('STAFF', 'ADMIN')
def get_marks(tool_id):
    tool = get_or_404(COTool, tool_id, 'Tool')
    course = db.session.get(Course, tool.course_outcome.course_id)
    _check_course_access(course)
    marks = {row.roll_number: row.marks_obtained for row in tool.marks}
    students = [{
        'regno': enrollment.roll_number,
        'name': enrollment.student.name,
        'sectionId': enrollment.section_id,
        'marksObtained': marks.get(enrollment.roll_number),
    } for enrollment in _visible_enrollments(course)]
    return success({'tool': tool.to_dict(), 'students': students})


def _store_marks(tool, entries):
    course = db.session.get(Course, tool.course_outcome.course_id)
    _check_course_access(course)
    allowed = {enrollment.roll_number for enrollment in _visible_enrollments(course)}

    invalid_regnos = []
    invalid_marks = []
    cleaned = []
    for entry in entries:
        regno = str(entry.get('regno') or '').strip().upper()
        if regno not in allowed:
            invalid_regnos.append(regno)
            continue
        try:
            value = float(entry.get('marksObtained'))
        except (TypeError, ValueError):
            invalid_marks.append(regno)
            continue
        if value < 0 or value > tool.max_marks:
            invalid_marks.append(regno)
            continue
        cleaned.append((regno, value))

    if invalid_regnos:
        raise APIError('Some students are not enrolled in your sections of this course',
                       details={'invalidRegnos': invalid_regnos})
    if invalid_marks:
        raise APIError(f"Marks must be numbers between 0 and {tool.max_marks}",
                       details={'invalidMarks': invalid_marks})

    existing = {row.roll_number: row for row in tool.marks}
    for regno, value in cleaned:
        row = existing.get(regno)
        if row is None:
            row = StudentToolMark(tool_id=tool.id, roll_number=regno, marks_obtained=value)
            db.session.add(row)
            existing[regno] = row
        else:
            row.marks_obtained = value
    db.session.commit()
    return len(cleaned)


@marks_bp.route('/staff/marks/<int:tool_id>', methods=['POST'])
@roles_required('STAFF', 'ADMIN')
def save_marks(tool_id):
    tool = get_or_404(COTool, tool_id, 'Tool')
    entries = get_json_body().get('marks')
    if not isinstance(entries, list) or not entries:
        raise APIError('marks must be a non-empty list')
    saved = _store_marks(tool, entries)
    return success({'saved': saved}, 'Marks saved successfully')


@marks_bp.route('/staff/marks/<int:tool_id>/import', methods=['POST'])
@roles_required('STAFF', 'ADMIN')
def import_marks(tool_id):
    tool = get_or_404(COTool, tool_id, 'Tool')
    filepath = save_upload()
    try:
        rows, skipped = get_excel_handler().read_marks_sheet(filepath)
    except ValueError as e:
        raise APIError(str(e))
    finally:
        remove_upload(filepath)

    if not rows:
        raise APIError('No valid rows found in file', details={'skipped': skipped})
    saved = _store_marks(tool, rows)
    return success({'saved': saved, 'skipped': skipped}, f"Imported marks for {saved} students")


# Aggregation and exports

def _tool_dicts(co):
    return [tool.to_dict() for tool in co.tools]


def _marks_lookup(tool_ids):
    if not tool_ids:
        return {}
    rows = StudentToolMark.query.filter(StudentToolMark.tool_id.in_(tool_ids)).all()
    lookup = {}
    for row in rows:
        lookup.setdefault(row.roll_number, {})[row.tool_id] = row.marks_obtained
    return lookup


def course_mark_table(course, roll_numbers):
    """CO marks and partition averages for each student of a course."""
    cos = CourseOutcome.query.filter_by(course_id=course.id).order_by(CourseOutcome.position).all()
    tools = {co.id: _tool_dicts(co) for co in cos}
    lookup = _marks_lookup([tool['toolId'] for co_tools in tools.values() for tool in co_tools])

    table = {}
    for roll_number in roll_numbers:
        marks = lookup.get(roll_number, {})
        co_marks = [(co, co_mark(tools[co.id], marks)) for co in cos]
        table[roll_number] = {
            'cos': co_marks,
            'averages': partition_averages([(co.co_type, mark) for co, mark in co_marks]),
        }
    return cos, table


def _csv_response(content, filename):
    return Response(content, mimetype='text/csv',
                    headers={'Content-Disposition': f'attachment; filename="{filename}"'})


@marks_bp.route('/staff/export/co/<int:co_id>', methods=['GET'])
@roles_required('STAFF', 'ADMIN')
def export_co(co_id):
    co = get_or_404(CourseOutcome, co_id, 'Course outcome')
    course = db.session.get(Course, co.course_id)
    _check_course_access(course)
    tools = _tool_dicts(co)
    enrollments = _visible_enrollments(course)
    lookup = _marks_lookup([tool['toolId'] for tool in tools])

    headers = ['Reg No', 'Name'] + [f"{tool['toolName']} ({tool['maxMarks']})" for tool in tools] + ['Consolidated']
    rows = []
    for enrollment in enrollments:
        marks = lookup.get(enrollment.roll_number, {})
        row = [enrollment.roll_number, enrollment.student.name]
        row += [marks.get(tool['toolId'], '') for tool in tools]
        row.append(f"{consolidated_co_mark(tools, marks):.2f}")
        rows.append(row)

    content = get_excel_handler().to_csv(headers, rows)
    return _csv_response(content, f"{course.course_code}_{co.co_number}_marks.csv")


@marks_bp.route('/staff/export/course/<course_code>', methods=['GET'])
@roles_required('STAFF', 'ADMIN')
def export_course(course_code):
    course = _course_by_code(course_code)
    _check_course_access(course)
    enrollments = _visible_enrollments(course)
    cos, table = course_mark_table(course, [enrollment.roll_number for enrollment in enrollments])

    headers = (['Reg No', 'Name'] + [co.co_number for co in cos]
               + ['Avg Theory', 'Avg Practical', 'Avg Experiential', 'Final Avg'])
    rows = []
    for enrollment in enrollments:
        entry = table[enrollment.roll_number]
        averages = entry['averages']
        row = [enrollment.roll_number, enrollment.student.name]
        row += [f"{mark:.2f}" for _, mark in entry['cos']]
        row += [f"{averages[key]:.2f}" for key in ('theory', 'practical', 'experiential', 'final')]
        rows.append(row)

    content = get_excel_handler().to_csv(headers, rows)
    return _csv_response(content, f"{course.course_code}_marks.csv")


@marks_bp.route('/staff/internal-marks/<course_code>', methods=['GET'])
@roles_required('STAFF', 'ADMIN')
def internal_marks(course_code):
    course = _course_by_code(course_code)
    _check_course_access(course)
    enrollments = _visible_enrollments(course)
    cos, table = course_mark_table(course, [enrollment.roll_number for enrollment in enrollments])

    students = []
    for enrollment in enrollments:
        entry = table[enrollment.roll_number]
        students.append({
            'regno': enrollment.roll_number,
            'name': enrollment.student.name,
            'cos': {co.co_number: mark for co, mark in entry['cos']},
            'averages': entry['averages'],
        })
    return success({'cos': [co.to_dict() for co in cos], 'students': students})


@marks_bp.route('/admin/consolidated-marks', methods=['GET'])
@roles_required('ADMIN')
def consolidated_marks():
    batch = get_or_404(Batch, parse_int(request.args.get('batchId'), 'batchId'), 'Batch')
    semester_number = parse_int(request.args.get('sem'), 'sem', 1, 8)
    semester = Semester.query.filter_by(batch_id=batch.id, semester_number=semester_number).first()
    if semester is None:
        raise NotFoundError('Semester not found for this batch')

    query = Student.query.filter_by(batch_id=batch.id, is_active=True)
    if request.args.get('deptId'):
        query = query.filter(Student.department_id == parse_int(request.args['deptId'], 'deptId'))
    students = query.order_by(Student.roll_number).all()
    courses = Course.query.filter_by(semester_id=semester.id, is_active=True).order_by(Course.course_code).all()
    roll_numbers = {student.roll_number for student in students}

    marks = {}
    for course in courses:
        enrolled = [row.roll_number for row in StudentCourse.query.filter_by(course_id=course.id).all()
                    if row.roll_number in roll_numbers]
        _, table = course_mark_table(course, enrolled)
        for roll_number, entry in table.items():
            averages = entry['averages']
            marks.setdefault(roll_number, {})[course.course_code] = {
                'theory': averages['theory'],
                'practical': averages['practical'],
                'experiential': averages['experiential'],
            }

    return success({
        'students': [{'regno': student.roll_number, 'name': student.name} for student in students],
        'courses': [course.to_dict() for course in courses],
        'marks': marks,
    })
