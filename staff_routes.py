import logging

from flask import Blueprint, g, request

from api_helpers import (APIError, ConflictError, ForbiddenError, NotFoundError, get_json_body, get_or_404,
                         parse_int, require_fields, success)
from auth import roles_required
from models import Batch, Course, CourseRequest, Section, Semester, StaffCourse, User, db, utcnow

staff_bp = Blueprint('staff', __name__, url_prefix='/api')


def course_in_department(course, user):
    """Courses belong to the department whose code or name matches the batch branch."""
    department = user.department
    if department is None or course.semester is None or course.semester.batch is None:
        return False
    branch = course.semester.batch.branch.strip()
    return branch.upper() == department.code.upper() or branch.lower() == department.name.lower()


def _free_sections(course):
    assigned = {row.section_id for row in StaffCourse.query.filter_by(course_id=course.id).all()}
    return [section for section in course.sections if section.is_active and section.id not in assigned]


def _allocation_counts(course):
    sections = [section for section in course.sections if section.is_active]
    assigned = StaffCourse.query.filter_by(course_id=course.id).count()
    return {'sectionsCount': len(sections), 'assignedCount': assigned}


# Admin: staff allocation

@staff_bp.route('/admin/users', methods=['GET'])
@roles_required('ADMIN')
def list_users():
    query = User.query.filter_by(is_active=True)
    role = request.args.get('role')
    if role:
        query = query.filter(User.role == role.upper())
    if request.args.get('deptId'):
        query = query.filter(User.department_id == parse_int(request.args['deptId'], 'deptId'))
    return success([user.to_dict() for user in query.order_by(User.name).all()])


@staff_bp.route('/admin/courses/<int:course_id>/staff', methods=['GET'])
@roles_required('ADMIN')
def course_staff(course_id):
    get_or_404(Course, course_id, 'Course')
    rows = StaffCourse.query.filter_by(course_id=course_id).order_by(StaffCourse.section_id).all()
    return success([row.to_dict() for row in rows])


@staff_bp.route('/admin/courses/<int:course_id>/staff', methods=['POST'])
@roles_required('ADMIN')
def allocate_staff(course_id):
    course = get_or_404(Course, course_id, 'Course')
    data = get_json_body()
    require_fields(data, ['userId', 'sectionId'])
    user = get_or_404(User, parse_int(data['userId'], 'userId'), 'Staff')
    if user.role != 'STAFF':
        raise APIError('Only staff users can be allocated to courses')
    section = get_or_404(Section, parse_int(data['sectionId'], 'sectionId'), 'Section')
    if section.course_id != course.id:
        raise APIError('Section does not belong to this course')
    if StaffCourse.query.filter_by(user_id=user.id, course_id=course.id, section_id=section.id).first():
        raise ConflictError('Staff is already allocated to this section')

    allocation = StaffCourse(user_id=user.id, course_id=course.id, section_id=section.id)
    db.session.add(allocation)
    db.session.commit()
    logging.info(f"Allocated staff {user.id} to course {course.course_code} section {section.section_name}")
    return success(allocation.to_dict(), 'Staff allocated successfully', 201)


@staff_bp.route('/admin/staff/<int:user_id>/courses', methods=['GET'])
@roles_required('ADMIN')
def staff_courses(user_id):
    get_or_404(User, user_id, 'Staff')
    rows = StaffCourse.query.filter_by(user_id=user_id).all()
    return success([row.to_dict() for row in rows])


@staff_bp.route('/admin/staff-courses/<int:staff_course_id>', methods=['PATCH'])
@roles_required('ADMIN')
def move_staff_allocation(staff_course_id):
    allocation = get_or_404(StaffCourse, staff_course_id, 'Allocation')
    data = get_json_body()
    section = get_or_404(Section, parse_int(data.get('sectionId'), 'sectionId'), 'Section')
    if section.course_id != allocation.course_id:
        raise APIError('Section does not belong to this course')
    clash = StaffCourse.query.filter_by(user_id=allocation.user_id, course_id=allocation.course_id,
                                        section_id=section.id).first()
    if clash is not None and clash.id != allocation.id:
        raise ConflictError('Staff is already allocated to this section')
    allocation.section_id = section.id
    db.session.commit()
    return success(allocation.to_dict(), 'Allocation updated successfully')


@staff_bp.route('/admin/staff-courses/<int:staff_course_id>', methods=['DELETE'])
@roles_required('ADMIN')
def delete_staff_allocation(staff_course_id):
    allocation = get_or_404(StaffCourse, staff_course_id, 'Allocation')
    db.session.delete(allocation)
    db.session.commit()
    return success(message='Allocation removed successfully')


# Admin: course requests

@staff_bp.route('/admin/requests/pending', methods=['GET'])
@roles_required('ADMIN')
def pending_requests():
    requests = CourseRequest.query.filter_by(status='PENDING').order_by(CourseRequest.requested_at).all()
    result = []
    for course_request in requests:
        data = course_request.to_dict()
        data.update(_allocation_counts(course_request.course))
        result.append(data)
    return success(result)


@staff_bp.route('/admin/requests/recent', methods=['GET'])
@roles_required('ADMIN')
def recent_requests():
    limit = parse_int(request.args.get('limit', 5), 'limit', 1, 50)
    requests = (CourseRequest.query.filter(CourseRequest.status != 'PENDING')
                .order_by(CourseRequest.resolved_at.desc(), CourseRequest.id.desc()).limit(limit).all())
    return success([course_request.to_dict() for course_request in requests])


@staff_bp.route('/admin/requests/<int:request_id>/accept', methods=['POST'])
@roles_required('ADMIN')
def accept_request(request_id):
    course_request = get_or_404(CourseRequest, request_id, 'Request')
    if course_request.status != 'PENDING':
        raise APIError('Only pending requests can be accepted')

    course = course_request.course
    if not [section for section in course.sections if section.is_active]:
        raise APIError('No sections available for this course')
    free_sections = _free_sections(course)
    if not free_sections:
        raise APIError('All sections are filled')

    section = free_sections[0]
    db.session.add(StaffCourse(user_id=course_request.user_id, course_id=course.id, section_id=section.id))
    course_request.status = 'ACCEPTED'
    course_request.resolved_at = utcnow()

    auto_rejected = 0
    if len(free_sections) == 1:
        others = CourseRequest.query.filter(CourseRequest.course_id == course.id,
                                            CourseRequest.status == 'PENDING',
                                            CourseRequest.id != course_request.id).all()
        for other in others:
            other.status = 'REJECTED'
            other.resolved_at = utcnow()
        auto_rejected = len(others)

    db.session.commit()
    logging.info(f"Accepted request {request_id}: {course.course_code} {section.section_name}, "
                 f"{auto_rejected} other requests rejected")
    return success({'request': course_request.to_dict(), 'sectionId': section.id,
                    'sectionName': section.section_name, 'autoRejected': auto_rejected},
                   'Request accepted')


@staff_bp.route('/admin/requests/<int:request_id>/reject', methods=['POST'])
@roles_required('ADMIN')
def reject_request(request_id):
    course_request = get_or_404(CourseRequest, request_id, 'Request')
    if course_request.status != 'PENDING':
        raise APIError('Only pending requests can be rejected')
    course_request.status = 'REJECTED'
    course_request.resolved_at = utcnow()
    db.session.commit()
    return success(course_request.to_dict(), 'Request rejected')


# Staff: own courses and requests

@staff_bp.route('/staff/courses', methods=['GET'])
@roles_required('STAFF')
def my_courses():
    rows = StaffCourse.query.filter_by(user_id=g.current_user.id).all()
    return success([row.to_dict() for row in rows])


@staff_bp.route('/staff/available-courses', methods=['GET'])
@roles_required('STAFF')
def available_courses():
    user = g.current_user
    allocated = {row.course_id for row in StaffCourse.query.filter_by(user_id=user.id).all()}
    requests = {row.course_id: row for row in CourseRequest.query.filter_by(user_id=user.id).all()}

    courses = (Course.query.join(Semester).join(Batch)
               .filter(Course.is_active.is_(True), Batch.is_active.is_(True))
               .order_by(Course.course_code).all())
    result = []
    for course in courses:
        if not course_in_department(course, user):
            continue
        course_request = requests.get(course.id)
        if course.id in allocated:
            status = 'ALLOCATED'
        elif course_request is not None and course_request.status in ('PENDING', 'REJECTED'):
            status = course_request.status
        else:
            status = 'AVAILABLE'
        data = course.to_dict()
        data.update(_allocation_counts(course))
        data['status'] = status
        data['requestId'] = course_request.id if course_request else None
        result.append(data)
    return success(result)


@staff_bp.route('/staff/request/<int:course_id>', methods=['POST'])
@roles_required('STAFF')
def send_request(course_id):
    user = g.current_user
    course = get_or_404(Course, course_id, 'Course')
    if not course.is_active:
        raise NotFoundError('Course not found')
    if not course_in_department(course, user):
        raise ForbiddenError('You can only request courses of your department')

    course_request = CourseRequest.query.filter_by(user_id=user.id, course_id=course.id).first()
    if course_request is not None and course_request.status in ('PENDING', 'ACCEPTED'):
        raise APIError(f"A request for this course is already {course_request.status.lower()}")
    if course_request is None:
        course_request = CourseRequest(user_id=user.id, course_id=course.id)
        db.session.add(course_request)
    course_request.status = 'PENDING'
    course_request.requested_at = utcnow()
    course_request.resolved_at = None
    db.session.commit()
    return success(course_request.to_dict(), 'Request sent', 201)


def _own_request(request_id):
    course_request = get_or_404(CourseRequest, request_id, 'Request')
    if course_request.user_id != g.current_user.id:
        raise ForbiddenError('This request belongs to another staff member')
    return course_request


@staff_bp.route('/staff/request/<int:request_id>', methods=['DELETE'])
@roles_required('STAFF')
def cancel_request(request_id):
    course_request = _own_request(request_id)
    if course_request.status != 'PENDING':
        raise APIError('Only pending requests can be cancelled')
    db.session.delete(course_request)
    db.session.commit()
    return success(message='Request cancelled')


@staff_bp.route('/staff/resend/<int:request_id>', methods=['POST'])
@roles_required('STAFF')
def resend_request(request_id):
    course_request = _own_request(request_id)
    if course_request.status != 'REJECTED':
        raise APIError('Only rejected requests can be resent')
    course_request.status = 'PENDING'
    course_request.requested_at = utcnow()
    course_request.resolved_at = None
    db.session.commit()
    return success(course_request.to_dict(), 'Request resent')


@staff_bp.route('/staff/my-requests', methods=['GET'])
@roles_required('STAFF')
def my_requests():
    requests = (CourseRequest.query.filter_by(user_id=g.current_user.id)
                .order_by(CourseRequest.requested_at.desc()).all())
    return success([course_request.to_dict() for course_request in requests])


@staff_bp.route('/staff/leave/<int:staff_course_id>', methods=['DELETE'])
@roles_required('STAFF')
def leave_course(staff_course_id):
    allocation = get_or_404(StaffCourse, staff_course_id, 'Allocation')
    if allocation.user_id != g.current_user.id:
        raise ForbiddenError('This allocation belongs to another staff member')

    course_request = CourseRequest.query.filter_by(user_id=allocation.user_id, course_id=allocation.course_id,
                                                   status='ACCEPTED').first()
    if course_request is not None:
        course_request.status = 'WITHDRAWN'
        course_request.resolved_at = utcnow()
    db.session.delete(allocation)
    db.session.commit()
    return success(message='You have left the course')
