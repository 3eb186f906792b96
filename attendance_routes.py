import logging

from flask import Blueprint, g, request, send_file

from api_helpers import (APIError, ForbiddenError, get_excel_handler, get_json_body, get_or_404, parse_date,
                         parse_int, require_args, require_fields, success)
from attendance import day_code, expand_timetable, find_unmarked, summarize
from auth import roles_required
from models import (ATTENDANCE_STATUSES, DAYS, Batch, Course, Department, PeriodAttendance, Semester, StaffCourse,
                    Student, StudentCourse, Timetable, db)

attendance_bp = Blueprint('attendance', __name__, url_prefix='/api')


def _staff_sections(course_id):
    return {row.section_id for row in
            StaffCourse.query.filter_by(user_id=g.current_user.id, course_id=course_id).all()}


def _check_staff_access(course_id, section_id):
    """Returns the caller's sections of the course, or None for admin."""
    if g.current_user.role == 'ADMIN':
        return None
    sections = _staff_sections(course_id)
    if not sections:
        raise ForbiddenError('You are not assigned to this course')
    if section_id and section_id not in sections:
        raise ForbiddenError('You are not assigned to this section')
    return sections


def _period_args(day, period):
    day = day.upper()
    if day not in DAYS:
        raise APIError(f"day must be one of {', '.join(DAYS)}")
    return day, parse_int(period, 'period', 1, 8)


# Staff timetable

@attendance_bp.route('/staff/attendance/timetable', methods=['GET'])
@roles_required('STAFF')
def staff_timetable():
    start_value, end_value = require_args('startDate', 'endDate')
    start = parse_date(start_value, 'startDate')
    end = parse_date(end_value, 'endDate')
    if start > end:
        raise APIError('startDate cannot be after endDate')

    allocations = StaffCourse.query.filter_by(user_id=g.current_user.id).all()
    allowed = {(row.course_id, row.section_id) for row in allocations}
    course_ids = {row.course_id for row in allocations}

    query = Timetable.query.filter(Timetable.is_active.is_(True), Timetable.course_id.in_(course_ids))
    if request.args.get('semesterId'):
        query = query.filter(Timetable.semester_id == parse_int(request.args['semesterId'], 'semesterId'))
    entries = [entry.to_dict() for entry in query.all()
               if entry.section_id is None or (entry.course_id, entry.section_id) in allowed]
    return success(expand_timetable(entries, start, end))


# Marking

def _students_for_period(course_id, section_id, day, period):
    course = get_or_404(Course, course_id, 'Course')
    day, period = _period_args(day, period)
    attendance_date = parse_date(request.args.get('date'), 'date')
    sections = _check_staff_access(course.id, section_id)

    query = StudentCourse.query.filter_by(course_id=course.id)
    if section_id:
        query = query.filter_by(section_id=section_id)
    elif sections is not None:
        query = query.filter(StudentCourse.section_id.in_(sections))
    enrollments = query.order_by(StudentCourse.roll_number).all()

    records = {record.roll_number: record for record in PeriodAttendance.query.filter_by(
        course_id=course.id, attendance_date=attendance_date, period_number=period).all()}
    students = []
    for enrollment in enrollments:
        record = records.get(enrollment.roll_number)
        students.append({
            'rollnumber': enrollment.roll_number,
            'name': enrollment.student.name,
            'sectionId': enrollment.section_id,
            'status': record.status if record else '',
            'updatedBy': record.updated_by if record else None,
        })
    return success({'courseId': course.id, 'date': attendance_date.isoformat(), 'dayOfWeek': day,
                    'periodNumber': period, 'students': students})


@attendance_bp.route('/staff/attendance/students/<int:course_id>/<int:section_id>/<day>/<period>',
                     methods=['GET'])
@roles_required('STAFF')
def staff_period_students(course_id, section_id, day, period):
    return _students_for_period(course_id, section_id, day, period)


@attendance_bp.route('/admin/attendance/students/<int:course_id>/<int:section_id>/<day>/<period>',
                     methods=['GET'])
@roles_required('ADMIN')
def admin_period_students(course_id, section_id, day, period):
    return _students_for_period(course_id, section_id, day, period)


def _mark_attendance(course_id, section_id, day, period):
    course = get_or_404(Course, course_id, 'Course')
    day, period = _period_args(day, period)
    sections = _check_staff_access(course.id, section_id)
    is_admin = sections is None

    data = get_json_body()
    require_fields(data, ['date'])
    attendance_date = parse_date(data['date'], 'date')
    if day_code(attendance_date) != day:
        raise APIError(f"{attendance_date.isoformat()} does not fall on {day}")
    attendances = data.get('attendances')
    if not isinstance(attendances, list) or not attendances:
        raise APIError('attendances must be a non-empty list')

    slot = Timetable.query.filter_by(course_id=course.id, day_of_week=day, period_number=period, is_active=True)
    if section_id:
        slot = slot.filter((Timetable.section_id == section_id) | (Timetable.section_id.is_(None)))
    if slot.first() is None:
        raise APIError('This period is not in the timetable for the course')

    enrolled = {row.roll_number: row.section_id for row in StudentCourse.query.filter_by(course_id=course.id).all()}
    existing = {record.roll_number: record for record in PeriodAttendance.query.filter_by(
        course_id=course.id, attendance_date=attendance_date, period_number=period).all()}
    semester_number = course.semester.semester_number

    processed = 0
    skipped = []
    for item in attendances:
        roll_number = str(item.get('rollnumber') or '').strip().upper()
        status = str(item.get('status') or '').strip().upper()
        reason = None
        if status not in ATTENDANCE_STATUSES:
            reason = f"Invalid status '{status}'"
        elif roll_number not in enrolled:
            reason = 'Student not enrolled in this course'
        elif section_id and enrolled[roll_number] != section_id:
            reason = 'Student is not in this section'
        elif not is_admin and enrolled[roll_number] not in sections:
            reason = 'Section not assigned to you'
        elif not is_admin and roll_number in existing and existing[roll_number].updated_by == 'admin':
            reason = 'Attendance locked by admin'
        if reason:
            skipped.append({'rollnumber': roll_number, 'reason': reason})
            continue

        record = existing.get(roll_number)
        if record is None:
            record = PeriodAttendance(roll_number=roll_number, course_id=course.id,
                                      attendance_date=attendance_date, period_number=period)
            db.session.add(record)
            existing[roll_number] = record
        record.section_id = enrolled[roll_number]
        record.semester_number = semester_number
        record.day_of_week = day
        record.status = status
        record.updated_by = 'admin' if is_admin else 'staff'
        record.marked_by = g.current_user.id
        processed += 1

    db.session.commit()
    if skipped:
        logging.warning(f"Attendance for {course.course_code} on {attendance_date} skipped {len(skipped)} students")
    return success({'processed': processed, 'skipped': skipped}, f"Attendance saved for {processed} students")


@attendance_bp.route('/staff/attendance/mark/<int:course_id>/<int:section_id>/<day>/<period>', methods=['POST'])
@roles_required('STAFF')
def staff_mark(course_id, section_id, day, period):
    return _mark_attendance(course_id, section_id, day, period)


@attendance_bp.route('/admin/attendance/mark/<int:course_id>/<int:section_id>/<day>/<period>', methods=['POST'])
@roles_required('ADMIN')
def admin_mark(course_id, section_id, day, period):
    return _mark_attendance(course_id, section_id, day, period)


@attendance_bp.route('/staff/attendance/skipped/<int:course_id>/<int:section_id>/<day>/<period>',
                     methods=['GET'])
@roles_required('STAFF', 'ADMIN')
def admin_locked(course_id, section_id, day, period):
    course = get_or_404(Course, course_id, 'Course')
    day, period = _period_args(day, period)
    _check_staff_access(course.id, section_id)
    attendance_date = parse_date(request.args.get('date'), 'date')

    query = PeriodAttendance.query.filter_by(course_id=course.id, attendance_date=attendance_date,
                                             period_number=period, updated_by='admin')
    if section_id:
        query = query.filter_by(section_id=section_id)
    records = query.order_by(PeriodAttendance.roll_number).all()
    return success([record.to_dict() for record in records])


# Reports

@attendance_bp.route('/admin/attendanceReports/batches', methods=['GET'])
@roles_required('ADMIN')
def report_batches():
    batches = Batch.query.filter_by(is_active=True).order_by(Batch.batch.desc()).all()
    return success([batch.to_dict() for batch in batches])


@attendance_bp.route('/admin/attendanceReports/departments/<int:batch_id>', methods=['GET'])
@roles_required('ADMIN')
def report_departments(batch_id):
    get_or_404(Batch, batch_id, 'Batch')
    department_ids = {row[0] for row in db.session.query(Student.department_id)
                      .filter(Student.batch_id == batch_id).distinct().all() if row[0]}
    query = Department.query.filter_by(is_active=True)
    if department_ids:
        query = query.filter(Department.id.in_(department_ids))
    return success([dept.to_dict() for dept in query.order_by(Department.id).all()])


@attendance_bp.route('/admin/attendanceReports/semesters/<int:batch_id>', methods=['GET'])
@roles_required('ADMIN')
def report_semesters(batch_id):
    get_or_404(Batch, batch_id, 'Batch')
    semesters = Semester.query.filter_by(batch_id=batch_id).order_by(Semester.semester_number).all()
    return success([semester.to_dict() for semester in semesters])


def _report_range(semester):
    start = parse_date(request.args['fromDate'], 'fromDate') if request.args.get('fromDate') else semester.start_date
    end = parse_date(request.args['toDate'], 'toDate') if request.args.get('toDate') else semester.end_date
    if start > end:
        raise APIError('fromDate cannot be after toDate')
    return start, end


def _batch_semester(batch_id, semester_id):
    batch = get_or_404(Batch, batch_id, 'Batch')
    semester = get_or_404(Semester, semester_id, 'Semester')
    if semester.batch_id != batch.id:
        raise APIError('Semester does not belong to this batch')
    return batch, semester


@attendance_bp.route('/admin/attendanceReports/subject-wise/<int:batch_id>/<int:semester_id>', methods=['GET'])
@roles_required('ADMIN')
def subject_wise_report(batch_id, semester_id):
    batch, semester = _batch_semester(batch_id, semester_id)
    start, end = _report_range(semester)

    student_query = Student.query.filter_by(batch_id=batch.id, is_active=True)
    if request.args.get('deptId'):
        student_query = student_query.filter(Student.department_id == parse_int(request.args['deptId'], 'deptId'))
    students = student_query.order_by(Student.roll_number).all()
    courses = Course.query.filter_by(semester_id=semester.id, is_active=True).order_by(Course.course_code).all()

    statuses = {}
    records = PeriodAttendance.query.filter(
        PeriodAttendance.course_id.in_([course.id for course in courses]),
        PeriodAttendance.attendance_date >= start,
        PeriodAttendance.attendance_date <= end).all()
    for record in records:
        statuses.setdefault((record.roll_number, record.course_id), []).append(record.status)

    course_info = [{'courseId': course.id, 'courseCode': course.course_code, 'courseTitle': course.course_title}
                   for course in courses]
    rows = []
    for student in students:
        summaries = {course.id: summarize(statuses.get((student.roll_number, course.id), []))
                     for course in courses}
        rows.append({'rollnumber': student.roll_number, 'name': student.name, 'courses': summaries})

    if request.args.get('format') == 'xlsx':
        title = (f"Attendance {batch.degree} {batch.branch} {batch.batch} - Semester {semester.semester_number} "
                 f"({start.isoformat()} to {end.isoformat()})")
        filepath = get_excel_handler().export_attendance_report(title, course_info, rows)
        return send_file(filepath, as_attachment=True, download_name='attendance_report.xlsx')

    report = []
    for row in rows:
        report.append({
            'rollnumber': row['rollnumber'],
            'name': row['name'],
            'courses': [dict(info, **row['courses'][info['courseId']]) for info in course_info],
        })
    return success({'fromDate': start.isoformat(), 'toDate': end.isoformat(), 'courses': course_info,
                    'students': report})


@attendance_bp.route('/admin/attendanceReports/unmarked/<int:batch_id>/<int:semester_id>', methods=['GET'])
@roles_required('ADMIN')
def unmarked_report(batch_id, semester_id):
    _, semester = _batch_semester(batch_id, semester_id)
    start, end = _report_range(semester)

    entries = [entry.to_dict() for entry in
               Timetable.query.filter_by(semester_id=semester.id, is_active=True).all()]
    course_ids = {entry['courseId'] for entry in entries}
    marked = {(row.attendance_date.isoformat(), row.period_number, row.course_id) for row in
              PeriodAttendance.query.filter(PeriodAttendance.course_id.in_(course_ids),
                                            PeriodAttendance.attendance_date >= start,
                                            PeriodAttendance.attendance_date <= end).all()}
    return success(find_unmarked(entries, start, end, marked))
