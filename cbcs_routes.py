import os
import logging

from flask import Blueprint, current_app, g, send_file

from api_helpers import (APIError, ConflictError, ForbiddenError, NotFoundError, get_excel_handler, get_json_body,
                         get_or_404, parse_int, require_args, require_fields, success)
from auth import roles_required
from cbcs_allocation import cbcs_allocator
from models import (CBCS, CBCS_TYPES, Batch, CBCSSectionStaff, CBCSSubject, Course, Department, ElectiveBucket,
                    Section, Semester, StaffCourse, Student, StudentCourse, StudentCourseChoice,
                    StudentElectiveSelection, User, db)
from student_routes import enroll_student

cbcs_bp = Blueprint('cbcs', __name__, url_prefix='/api/cbcs')

CORE_BUCKET = 'Core'


def _bucket_labels(semester_id):
    labels = {}
    for bucket in ElectiveBucket.query.filter_by(semester_id=semester_id).all():
        for entry in bucket.entries:
            labels[entry.course_id] = bucket.label
    return labels


def _section_staffs(course):
    sections = []
    for section in course.sections:
        if not section.is_active:
            continue
        staffs = [{'staffId': row.user_id, 'staffName': row.user.name}
                  for row in StaffCourse.query.filter_by(course_id=course.id, section_id=section.id).all()]
        sections.append({'sectionId': section.id, 'sectionName': section.section_name, 'staffs': staffs})
    return sections


def _offers(cbcs):
    """courseId -> ordered (sectionId, staffId) pairs offered by the CBCS."""
    offers = {}
    for subject in cbcs.subjects:
        offers[subject.course_id] = [(row.section_id, row.staff_id) for row in subject.staffs]
    return offers


def _subject_for_course(cbcs, course_id):
    return next((subject for subject in cbcs.subjects if subject.course_id == course_id), None)


def _check_student_access(regno):
    user = g.current_user
    if user.role == 'STUDENT' and (user.roll_number or '').upper() != regno:
        raise ForbiddenError('You can only access your own CBCS')


@cbcs_bp.route('/course', methods=['GET'])
@roles_required('ADMIN')
def grouped_courses():
    dept_id, batch_id, semester_id = require_args('deptId', 'batchId', 'semesterId')
    batch = get_or_404(Batch, parse_int(batch_id, 'batchId'), 'Batch')
    semester = get_or_404(Semester, parse_int(semester_id, 'semesterId'), 'Semester')
    department_id = parse_int(dept_id, 'deptId')

    labels = _bucket_labels(semester.id)
    core_strength = Student.query.filter_by(batch_id=batch.id, department_id=department_id, is_active=True).count()
    if core_strength == 0:
        core_strength = current_app.config['CORE_COURSE_STRENGTH']

    groups = {}
    courses = Course.query.filter_by(semester_id=semester.id, is_active=True).order_by(Course.course_code).all()
    for course in courses:
        label = labels.get(course.id, CORE_BUCKET)
        if label == CORE_BUCKET:
            total_students = core_strength
        else:
            total_students = StudentElectiveSelection.query.filter(
                StudentElectiveSelection.course_id == course.id,
                StudentElectiveSelection.status.in_(['pending', 'allocated'])).count()
        groups.setdefault(label, []).append({
            'courseId': course.id,
            'courseCode': course.course_code,
            'courseTitle': course.course_title,
            'credits': course.credits,
            'sections': _section_staffs(course),
            'total_students': total_students,
        })

    ordered = {CORE_BUCKET: groups.pop(CORE_BUCKET, [])}
    ordered.update(sorted(groups.items()))
    return success(ordered)


@cbcs_bp.route('/create', methods=['POST'])
@roles_required('ADMIN')
def create_cbcs():
    data = get_json_body()
    require_fields(data, ['deptId', 'batchId', 'semesterId', 'type'])
    cbcs_type = str(data['type']).strip().upper()
    if cbcs_type not in CBCS_TYPES:
        raise APIError(f"type must be one of {', '.join(CBCS_TYPES)}")
    department = get_or_404(Department, parse_int(data['deptId'], 'deptId'), 'Department')
    batch = get_or_404(Batch, parse_int(data['batchId'], 'batchId'), 'Batch')
    semester = get_or_404(Semester, parse_int(data['semesterId'], 'semesterId'), 'Semester')
    subjects = data.get('subjects')
    if not isinstance(subjects, list) or not subjects:
        raise APIError('At least one subject is required')

    cbcs = CBCS(batch_id=batch.id, department_id=department.id, semester_id=semester.id, type=cbcs_type,
                total_students=parse_int(data.get('total_students') or 0, 'total_students', 0),
                created_by=g.current_user.id)

    workbook_subjects = []
    for item in subjects:
        course = get_or_404(Course, parse_int(item.get('subject_id'), 'subject_id'), 'Course')
        if course.semester_id != semester.id:
            raise APIError(f"{course.course_code} does not belong to the selected semester")
        subject = CBCSSubject(course_id=course.id, course_code=course.course_code,
                              course_name=item.get('name') or course.course_title,
                              bucket_name=item.get('bucketName') or CORE_BUCKET)
        staffs = []
        for staff_item in item.get('staffs') or []:
            section = get_or_404(Section, parse_int(staff_item.get('sectionId'), 'sectionId'), 'Section')
            if section.course_id != course.id:
                raise APIError(f"Section {section.id} does not belong to {course.course_code}")
            staff = get_or_404(User, parse_int(staff_item.get('staff_id'), 'staff_id'), 'Staff')
            subject.staffs.append(CBCSSectionStaff(section_id=section.id, staff_id=staff.id))
            staffs.append({'staffId': staff.id, 'staffName': staff_item.get('staff_name') or staff.name})
        cbcs.subjects.append(subject)
        workbook_subjects.append({'courseCode': course.course_code, 'courseName': subject.course_name,
                                  'staffs': staffs})

    # Only the newest CBCS of a batch/department/semester stays open to students
    CBCS.query.filter_by(batch_id=batch.id, department_id=department.id, semester_id=semester.id,
                         is_active=True).update({'is_active': False})
    db.session.add(cbcs)
    db.session.flush()

    folder = os.path.join(current_app.config['UPLOAD_FOLDER'], 'cbcs_excels')
    cbcs.allocation_excel_path = get_excel_handler().create_cbcs_workbook(cbcs.id, workbook_subjects, folder)
    db.session.commit()
    logging.info(f"Created {cbcs_type} CBCS {cbcs.id} with {len(workbook_subjects)} subjects")
    return success(cbcs.to_dict(include_subjects=True), 'CBCS created successfully', 201)


@cbcs_bp.route('/getcbcs', methods=['GET'])
@roles_required('ADMIN')
def list_cbcs():
    records = CBCS.query.order_by(CBCS.created_at.desc(), CBCS.id.desc()).all()
    return success([record.to_dict() for record in records])


@cbcs_bp.route('/cbcs/<int:cbcs_id>', methods=['GET'])
@roles_required('ADMIN')
def get_cbcs(cbcs_id):
    return success(get_or_404(CBCS, cbcs_id, 'CBCS').to_dict(include_subjects=True))


@cbcs_bp.route('/student', methods=['GET'])
@roles_required('STUDENT', 'ADMIN')
def student_cbcs():
    regno, batch_id, dept_id, semester_id = require_args('regno', 'batchId', 'deptId', 'semesterId')
    regno = regno.upper()
    _check_student_access(regno)
    cbcs = (CBCS.query.filter_by(batch_id=parse_int(batch_id, 'batchId'), department_id=parse_int(dept_id, 'deptId'),
                                 semester_id=parse_int(semester_id, 'semesterId'), is_active=True)
            .order_by(CBCS.id.desc()).first())
    if cbcs is None:
        raise NotFoundError('No active CBCS found')

    selected = {row.course_id for row in StudentElectiveSelection.query.filter_by(roll_number=regno).all()}
    subjects = [subject.to_dict() for subject in cbcs.subjects
                if subject.bucket_name == CORE_BUCKET or subject.course_id in selected]

    data = cbcs.to_dict()
    data['subjects'] = subjects
    data['submitted'] = StudentCourseChoice.query.filter_by(cbcs_id=cbcs.id, roll_number=regno).count() > 0
    return success(data)


def _parse_selections(selections):
    parsed = []
    for item in selections:
        parsed.append({
            'courseId': parse_int(item.get('courseId'), 'courseId'),
            'sectionId': parse_int(item.get('sectionId'), 'sectionId'),
            'staffId': parse_int(item.get('staffId'), 'staffId'),
        })
    return parsed


@cbcs_bp.route('/submission', methods=['POST'])
@roles_required('STUDENT', 'ADMIN')
def submit_choices():
    data = get_json_body()
    require_fields(data, ['regno', 'cbcs_id'])
    regno = str(data['regno']).strip().upper()
    _check_student_access(regno)
    student = get_or_404(Student, regno, 'Student')
    cbcs = get_or_404(CBCS, parse_int(data['cbcs_id'], 'cbcs_id'), 'CBCS')
    if not cbcs.is_active or cbcs.complete:
        raise APIError('This CBCS is closed for submissions')

    selections = data.get('selections')
    if not isinstance(selections, list) or not selections:
        raise APIError('selections cannot be empty')
    selections = _parse_selections(selections)
    offers = _offers(cbcs)
    errors = cbcs_allocator.validate_selections(selections, offers)
    if errors:
        raise APIError('Invalid selections', details={'errors': errors})

    if cbcs.type == 'FCFS':
        course_ids = [selection['courseId'] for selection in selections]
        if len(set(course_ids)) != len(course_ids):
            raise APIError('Duplicate selection: one section per course')
        enrolled = StudentCourse.query.filter(StudentCourse.roll_number == regno,
                                              StudentCourse.course_id.in_(course_ids)).count()
        if enrolled:
            raise APIError('Duplicate selection: already enrolled in a selected course')

        entries = []
        for selection in selections:
            course = db.session.get(Course, selection['courseId'])
            section = db.session.get(Section, selection['sectionId'])
            enroll_student(regno, course, section)
            entries.append({'courseCode': course.course_code, 'staffId': selection['staffId'],
                            'regno': regno, 'name': student.name})
        db.session.flush()
        if cbcs.allocation_excel_path and os.path.exists(cbcs.allocation_excel_path):
            get_excel_handler().append_allocations(cbcs.allocation_excel_path, entries)
        db.session.commit()
        logging.info(f"FCFS enrollment for {regno} in CBCS {cbcs.id}: {len(entries)} courses")
        return success({'enrolled': len(entries)}, 'Courses allocated successfully', 201)

    StudentCourseChoice.query.filter_by(cbcs_id=cbcs.id, roll_number=regno).delete()
    for order, selection in enumerate(selections, 1):
        db.session.add(StudentCourseChoice(cbcs_id=cbcs.id, roll_number=regno, course_id=selection['courseId'],
                                           section_id=selection['sectionId'], staff_id=selection['staffId'],
                                           preference_order=order))
    db.session.commit()
    return success({'choices': len(selections)}, 'Preferences saved successfully', 201)


@cbcs_bp.route('/<int:cbcs_id>/allocate', methods=['POST'])
@roles_required('ADMIN')
def run_allocation(cbcs_id):
    cbcs = get_or_404(CBCS, cbcs_id, 'CBCS')
    if cbcs.type != 'OPTIMAL':
        raise APIError('Only OPTIMAL CBCS can be allocated')
    if cbcs.complete:
        raise ConflictError('Allocation has already been run for this CBCS')

    rows = StudentCourseChoice.query.filter_by(cbcs_id=cbcs.id).all()
    if not rows:
        raise APIError('No student choices to allocate')
    choices = [dict(row.to_dict(), id=row.id) for row in rows]

    regnos = {row.roll_number for row in rows}
    enrolled = {}
    for row in StudentCourse.query.filter(StudentCourse.roll_number.in_(regnos)).all():
        enrolled.setdefault(row.roll_number, set()).add(row.course_id)

    allocations, stats = cbcs_allocator.allocate(choices, _offers(cbcs), enrolled)

    names = {student.roll_number: student.name for student in
             Student.query.filter(Student.roll_number.in_(regnos)).all()}
    entries = []
    for allocation in allocations:
        subject = _subject_for_course(cbcs, allocation['courseId'])
        enroll_student(allocation['regno'], db.session.get(Course, allocation['courseId']),
                       db.session.get(Section, allocation['sectionId']))
        entries.append({'courseCode': subject.course_code, 'staffId': allocation['staffId'],
                        'regno': allocation['regno'], 'name': names.get(allocation['regno'], '')})

    allocated_pairs = {(a['regno'], a['courseId']) for a in allocations}
    for selection in StudentElectiveSelection.query.filter(
            StudentElectiveSelection.roll_number.in_(regnos)).all():
        if (selection.roll_number, selection.course_id) in allocated_pairs:
            selection.status = 'allocated'

    cbcs.complete = True
    db.session.flush()
    if cbcs.allocation_excel_path and os.path.exists(cbcs.allocation_excel_path):
        get_excel_handler().append_allocations(cbcs.allocation_excel_path, entries)
    db.session.commit()
    return success(stats, 'Allocation completed')


@cbcs_bp.route('/<int:cbcs_id>/download-excel', methods=['GET'])
@roles_required('ADMIN')
def download_excel(cbcs_id):
    cbcs = get_or_404(CBCS, cbcs_id, 'CBCS')
    if not cbcs.allocation_excel_path or not os.path.exists(cbcs.allocation_excel_path):
        raise NotFoundError('Allocation workbook not found')
    return send_file(cbcs.allocation_excel_path, as_attachment=True,
                     download_name=f"cbcs_allocation_{cbcs.id}.xlsx")
